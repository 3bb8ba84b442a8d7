"""Agent invocation: backend adapter, approvals and per-channel orchestration."""

from cordbridge.agent.orchestrator import ChannelState, QueryOrchestrator, SubmitOutcome
from cordbridge.agent.permissions import Allow, ApprovalMediator, Deny

__all__ = [
    "Allow",
    "ApprovalMediator",
    "ChannelState",
    "Deny",
    "QueryOrchestrator",
    "SubmitOutcome",
]
