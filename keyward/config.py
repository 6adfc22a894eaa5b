"""
keyward - config

YAML settings for the controller. The file is located by --config, then
$KEYWARD_CONFIG, then ./keyward.yml. Relative paths inside it resolve against
the directory the file lives in.
"""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any, Dict, Optional

from keyward.errors import ConfigError

DEFAULT_CONFIG = "keyward.yml"


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as ex:
        raise ConfigError(
            "PyYAML is required. Install with: python3 -m pip install pyyaml "
            "or your distro package (python3-pyyaml)."
        ) from ex

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as ex:
        raise ConfigError(f"Cannot read {path}: {ex}") from ex
    except yaml.YAMLError as ex:
        raise ConfigError(f"Invalid YAML in {path}: {ex}") from ex
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: root must be a mapping/dict")
    return data


def cfg_get(cfg: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def require(cfg: Dict[str, Any], path: str) -> Any:
    v = cfg_get(cfg, path, None)
    if v is None:
        raise ConfigError(f"Missing required config key: {path}")
    return v


def _int(cfg: Dict[str, Any], path: str, default: int) -> int:
    v = cfg_get(cfg, path, default)
    try:
        n = int(v)
    except (TypeError, ValueError) as ex:
        raise ConfigError(f"{path} must be an integer, got {v!r}") from ex
    if n <= 0:
        raise ConfigError(f"{path} must be positive, got {n}")
    return n


@dataclasses.dataclass
class SSHSettings:
    identity_file: Optional[str] = None
    connect_timeout: int = 8
    command_timeout: int = 120
    strict_host_key_checking: str = "accept-new"
    manager_key: Optional[str] = None


@dataclasses.dataclass
class AgentSettings:
    path: str = ".ssh/keyward_agent.py"
    interpreter: str = "python3"
    auto_update: bool = True


@dataclasses.dataclass
class Settings:
    inventory: str
    concurrency: int = 8
    log_level: str = "info"
    ssh: SSHSettings = dataclasses.field(default_factory=SSHSettings)
    agent: AgentSettings = dataclasses.field(default_factory=AgentSettings)
    source: Optional[str] = None


def resolve_path(base: Path, value: str) -> str:
    if value.startswith("sqlite://"):
        return "sqlite://" + resolve_path(base, value[len("sqlite://") :])
    p = Path(value).expanduser()
    return str(p if p.is_absolute() else base / p)


def settings_from_dict(cfg: Dict[str, Any], base: Optional[Path] = None) -> Settings:
    base = base or Path.cwd()

    inventory = require(cfg, "inventory")
    if not isinstance(inventory, str):
        raise ConfigError("inventory must be a path or sqlite:// URL")

    identity = os.environ.get("KEYWARD_SSH_KEY") or cfg_get(cfg, "ssh.identity_file")
    strict = str(cfg_get(cfg, "ssh.strict_host_key_checking", "accept-new"))
    if strict not in ("yes", "no", "accept-new"):
        raise ConfigError(
            f"ssh.strict_host_key_checking must be yes, no or accept-new, got {strict!r}"
        )

    ssh = SSHSettings(
        identity_file=resolve_path(base, identity) if identity else None,
        connect_timeout=_int(cfg, "ssh.connect_timeout_seconds", 8),
        command_timeout=_int(cfg, "ssh.command_timeout_seconds", 120),
        strict_host_key_checking=strict,
        manager_key=cfg_get(cfg, "ssh.manager_key"),
    )
    agent = AgentSettings(
        path=str(cfg_get(cfg, "agent.path", ".ssh/keyward_agent.py")),
        interpreter=str(cfg_get(cfg, "agent.interpreter", "python3")),
        auto_update=bool(cfg_get(cfg, "agent.auto_update", True)),
    )
    return Settings(
        inventory=resolve_path(base, inventory),
        concurrency=_int(cfg, "concurrency", 8),
        log_level=str(cfg_get(cfg, "logging.level", "info")),
        ssh=ssh,
        agent=agent,
    )


def load_settings(path: Optional[str] = None) -> Settings:
    path = path or os.environ.get("KEYWARD_CONFIG") or DEFAULT_CONFIG
    if not Path(path).exists():
        raise ConfigError(f"No configuration file found at '{path}'")
    cfg = load_yaml(path)
    settings = settings_from_dict(cfg, Path(path).resolve().parent)
    settings.source = path
    return settings
