"""Reading and writing ~/.cordbridge/config.json and its .env secrets file."""

import json
import os
import re
import stat
from pathlib import Path
from typing import Any

from loguru import logger

from cordbridge.config.schema import Config


# env var -> (section, field) on Config. Secrets never stay in config.json.
ENV_BINDINGS: dict[str, tuple[str, str]] = {
    "DISCORD_TOKEN": ("discord", "token"),
    "DISCORD_APPLICATION_ID": ("discord", "application_id"),
    "ANTHROPIC_API_KEY": ("anthropic", "api_key"),
    "PROJECTS_DIR": ("projects", "root"),
    "CORDBRIDGE_DISCORD__TOKEN": ("discord", "token"),
    "CORDBRIDGE_ANTHROPIC__API_KEY": ("anthropic", "api_key"),
    "CORDBRIDGE_GATEWAY__AUTH_TOKEN": ("gateway", "auth_token"),
}

SECRET_ENV_VARS = ("DISCORD_TOKEN", "ANTHROPIC_API_KEY", "CORDBRIDGE_GATEWAY__AUTH_TOKEN")

_DOTENV_LINE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*?)\s*$")
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    return Path.home() / ".cordbridge" / "config.json"


def get_env_path() -> Path:
    return Path.home() / ".cordbridge" / ".env"


def load_config(config_path: Path | None = None) -> Config:
    """
    Build the runtime configuration.

    Later sources win:
      1. config.json (camelCase keys)
      2. ~/.cordbridge/.env
      3. the process environment

    A config file that cannot be parsed is logged and replaced by defaults.
    """
    path = config_path or get_config_path()

    # The process environment keeps priority over the .env file
    for key, value in read_dotenv(get_env_path()).items():
        os.environ.setdefault(key, value)

    config = Config()
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            config = Config.model_validate(convert_keys(data))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config {path}: {e}")

    for env_var, (section, field) in ENV_BINDINGS.items():
        value = os.environ.get(env_var)
        if value:
            setattr(getattr(config, section), field, value)
    return config


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Write config.json, moving secret values into the .env file (mode 600)."""
    path = config_path or get_config_path()
    data = config.model_dump()

    env_path = get_env_path()
    secrets = read_dotenv(env_path)
    for env_var in SECRET_ENV_VARS:
        section, field = ENV_BINDINGS[env_var]
        value = data[section][field]
        data[section][field] = ""
        # Blank values leave whatever the user put in .env alone
        if value:
            secrets[env_var] = value
    write_dotenv(env_path, secrets)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(convert_to_camel(data), indent=2), encoding="utf-8")
    _owner_only(path)


def read_dotenv(env_path: Path) -> dict[str, str]:
    """KEY=VALUE pairs from a .env file. Quotes are stripped, nothing is expanded."""
    if not env_path.exists():
        return {}
    values: dict[str, str] = {}
    for line in env_path.read_text(encoding="utf-8").splitlines():
        if line.lstrip().startswith("#"):
            continue
        match = _DOTENV_LINE.match(line)
        if not match:
            continue
        key, value = match.groups()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        values[key] = value
    return values


def write_dotenv(env_path: Path, values: dict[str, str]) -> None:
    env_path.parent.mkdir(parents=True, exist_ok=True)
    lines = ["# cordbridge secrets, managed automatically. Do not commit this file.", ""]
    for key in sorted(values):
        value = values[key]
        if re.search(r"[\s\"'#]", value):
            value = '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
        lines.append(f"{key}={value}")
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    _owner_only(env_path)


def _owner_only(path: Path) -> None:
    try:
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError as e:
        logger.debug(f"Could not restrict permissions on {path}: {e}")


def convert_keys(data: Any) -> Any:
    """camelCase keys to snake_case, recursively."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)
