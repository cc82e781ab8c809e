"""
Configuration for rmote
Defaults, YAML profile discovery and the immutable SyncConfig value.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Mapping, Optional, Tuple

import yaml

from .errors import ConfigError

# ══════════════════════════════════════════════════════════════════════════════
#  DEFAULTS  ── overridden by YAML profiles, environment and CLI flags
# ══════════════════════════════════════════════════════════════════════════════

SSH_HOST: Optional[str] = None
SSH_PORT = 22
SSH_USER = "root"
# Private key; falls back to ssh-agent / ~/.ssh/id_* when the file is missing
SSH_KEY_PATH = "~/.ssh/id_ed25519"

REMOTE_ROOT = "."

# Quiet period (seconds) before a burst of events is applied
DEBOUNCE_S = 1.0

PROJECT_FILE = ".rmote"
IGNORE_FILE = ".rmoteignore"

# Environment variable → profile key
ENV_KEYS = {
    "RMOTE_HOST": "server",
    "RMOTE_PORT": "port",
    "RMOTE_USER": "user",
    "RMOTE_KEY": "ssh_key",
    "RMOTE_PASSPHRASE": "passphrase",
    "RMOTE_REMOTE_DIR": "remote_root",
}


@dataclass(frozen=True)
class SyncConfig:
    """Everything the sync core needs; built once at startup."""

    host: Optional[str] = SSH_HOST
    port: int = SSH_PORT
    user: str = SSH_USER
    ssh_key: Optional[str] = SSH_KEY_PATH
    ssh_password: Optional[str] = None
    passphrase: Optional[str] = None
    local_root: Path = field(default_factory=lambda: Path.cwd().resolve())
    remote_root: PurePosixPath = PurePosixPath(REMOTE_ROOT)
    blacklist: Tuple[str, ...] = ()
    debounce: float = DEBOUNCE_S
    initial_sync: bool = True
    op_timeout: Optional[float] = None
    skip_unchanged: bool = False

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}:{self.port}:{self.remote_root}"


# ══════════════════════════════════════════════════════════════════════════════
#  GLOBAL CONFIG FILE  ── $XDG_CONFIG_HOME/rmote/config.yaml
# ══════════════════════════════════════════════════════════════════════════════

def get_global_config_dir() -> Path:
    """Return the global config directory for rmote."""
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "rmote"
    return Path.home() / ".config" / "rmote"


def load_global_config() -> dict:
    """Load global config; a missing file yields an empty dict."""
    cfg_path = get_global_config_dir() / "config.yaml"
    if not cfg_path.is_file():
        return {}
    return load_profile_file(cfg_path)


# ══════════════════════════════════════════════════════════════════════════════
#  PROJECT CONFIG FILE  ── .rmote (searched upward)
# ══════════════════════════════════════════════════════════════════════════════

def find_project_file(start: Optional[Path] = None) -> Optional[Path]:
    """
    Search upward from *start* (default: cwd) for a .rmote YAML file.
    Returns the Path if found, or None if no .rmote exists in any parent.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / PROJECT_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_profile_file(path: Path) -> dict:
    """Parse a .rmote / config.yaml file and return its contents as a dict."""
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def get_profile(data: dict, profile_name: str = "default") -> dict:
    """
    Extract a named profile from a .rmote or config.yaml data dict.
    Falls back to the first profile if the named one is not found.
    Returns a flat profile dict merged with top-level defaults.
    """
    defaults = data.get("defaults") or {}
    profiles = data.get("profiles") or []
    if not profiles:
        return dict(defaults)
    profile = next((p for p in profiles if p.get("name") == profile_name), None)
    if profile is None:
        profile = profiles[0]
    merged = dict(defaults)
    merged.update(profile)
    return merged


def env_profile(env: Mapping[str, str]) -> dict:
    """Profile keys taken from RMOTE_* environment variables."""
    return {key: env[var] for var, key in ENV_KEYS.items() if env.get(var)}


# ══════════════════════════════════════════════════════════════════════════════
#  BUILD  ── profile dict → SyncConfig
# ══════════════════════════════════════════════════════════════════════════════

def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_number(key: str, value, cast):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}") from None


def build_config(profile: dict, base_dir: Optional[Path] = None) -> SyncConfig:
    """
    Turn a flat profile dict into a SyncConfig.
    Supports keys: server, port, user/username, ssh_key, ssh_password,
                   passphrase, local_root, remote_root, base_remote
                   (prepended to remote_root if remote_root is relative),
                   blacklist, debounce, initial_sync, op_timeout,
                   skip_unchanged.
    Relative local roots are resolved against *base_dir* (default: cwd).
    """
    kw: dict = {}
    if profile.get("server"):
        kw["host"] = str(profile["server"])
    if "port" in profile:
        kw["port"] = _as_number("port", profile["port"], int)
    if "user" in profile:
        kw["user"] = str(profile["user"])
    elif "username" in profile:
        kw["user"] = str(profile["username"])
    if "ssh_key" in profile:
        kw["ssh_key"] = str(profile["ssh_key"]) if profile["ssh_key"] else None
    if "ssh_password" in profile:
        kw["ssh_password"] = str(profile["ssh_password"]) if profile["ssh_password"] else None
    if "passphrase" in profile:
        kw["passphrase"] = str(profile["passphrase"]) if profile["passphrase"] else None

    base = (base_dir or Path.cwd()).expanduser()
    local = Path(str(profile.get("local_root", "."))).expanduser()
    if not local.is_absolute():
        local = base / local
    kw["local_root"] = local.resolve()

    if "remote_root" in profile:
        rr = str(profile["remote_root"])
        prefix = str(profile.get("base_remote", "")).rstrip("/")
        if prefix and not rr.startswith("/"):
            rr = f"{prefix}/{rr}"
        kw["remote_root"] = PurePosixPath(rr)

    rules = profile.get("blacklist") or []
    if isinstance(rules, str):
        rules = [rules]
    kw["blacklist"] = tuple(str(r) for r in rules)

    if "debounce" in profile:
        debounce = _as_number("debounce", profile["debounce"], float)
        if debounce < 0:
            raise ConfigError(f"debounce must be >= 0, got {debounce}")
        kw["debounce"] = debounce
    if "initial_sync" in profile:
        kw["initial_sync"] = _as_bool(profile["initial_sync"])
    if profile.get("op_timeout") is not None:
        timeout = _as_number("op_timeout", profile["op_timeout"], float)
        if timeout <= 0:
            raise ConfigError(f"op_timeout must be > 0, got {timeout}")
        kw["op_timeout"] = timeout
    if "skip_unchanged" in profile:
        kw["skip_unchanged"] = _as_bool(profile["skip_unchanged"])

    if "port" in kw and not 0 < kw["port"] < 65536:
        raise ConfigError(f"port out of range: {kw['port']}")
    return SyncConfig(**kw)


def load_config(profile_name: str = "default", start: Optional[Path] = None,
                env: Optional[Mapping[str, str]] = None,
                overrides: Optional[dict] = None) -> SyncConfig:
    """
    Merge global defaults, the nearest .rmote profile, RMOTE_* variables and
    explicit overrides (highest priority, None values ignored).
    """
    env = os.environ if env is None else env
    merged: dict = dict(load_global_config().get("defaults") or {})

    base_dir = (start or Path.cwd()).resolve()
    project = find_project_file(base_dir)
    if project is not None:
        merged.update(get_profile(load_profile_file(project), profile_name))
        base_dir = project.parent

    merged.update(env_profile(env))
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key == "blacklist":
            merged[key] = list(merged.get(key) or []) + list(value)
        else:
            merged[key] = value
    return build_config(merged, base_dir=base_dir)
