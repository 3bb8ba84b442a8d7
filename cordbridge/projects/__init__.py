"""Project discovery."""

from cordbridge.projects.registry import PermissionMode, ProjectConfig, ProjectRegistry

__all__ = ["PermissionMode", "ProjectConfig", "ProjectRegistry"]
