# checkin/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the check-in scanner.

Single source of truth:
    config/config.yaml   (override with CHECKIN_CONFIG or --config)

Design notes
------------
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return {} or sensible defaults when sections are absent.
- Accessors take an optional cfg dict so tools/tests can work on a private copy.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of the config file
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_api_cfg() -> dict
- get_event_id() -> str
- get_scanner_cfg() -> dict
- get_feedback_cfg() -> dict
- get_stats_cfg() -> dict
- get_log_level(default: str = "INFO") -> str
- get_server_bind() -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"
ENV_VAR      = "CHECKIN_CONFIG"


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with an 'app:' section.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except OSError as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def _resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file, validate required shape, and return the raw dict.
    Resolution order: explicit path, $CHECKIN_CONFIG, config/config.yaml.
    """
    env_path = os.getenv(ENV_VAR, "").strip()
    if path:
        cfg_path = _resolve_path(path)
    elif env_path:
        cfg_path = _resolve_path(env_path)
    else:
        cfg_path = DEFAULT_CFG
    cfg = _load_yaml(cfg_path)

    # Minimal structural contract for client startup:
    try:
        base_url = cfg["app"]["api"]["base_url"]
        if not isinstance(base_url, str) or not base_url.strip():
            raise KeyError("app.api.base_url must be a non-empty string")
    except (KeyError, TypeError) as ke:
        raise RuntimeError(
            "CONFIG missing required key: app.api.base_url\n"
            "Your config must contain a single top-level 'app:' mapping with an "
            "'api.base_url' entry. See config/config.yaml template."
        ) from ke

    return cfg


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


def _cfg(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return CONFIG if cfg is None else cfg


# ---------- Accessors ----------
def get_api_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the ticketing API block (base_url/timeout_ms/check_in_by)."""
    return (_cfg(cfg).get("app", {}) or {}).get("api", {}) or {}


def get_event_id(cfg: Optional[Dict[str, Any]] = None) -> str:
    """Return the configured event id or '' when unset."""
    event = (_cfg(cfg).get("app", {}) or {}).get("event", {}) or {}
    return str(event.get("id") or "").strip()


def get_scanner_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return scanner configuration block (source/camera/mock/cooldown) or {}."""
    return _cfg(cfg).get("scanner", {}) or {}


def get_feedback_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return feedback toggles (sound/haptic) or {}."""
    return _cfg(cfg).get("feedback", {}) or {}


def get_stats_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return stats polling block or {}."""
    return _cfg(cfg).get("stats", {}) or {}


def get_log_level(default: str = "INFO", cfg: Optional[Dict[str, Any]] = None) -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (_cfg(cfg).get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind(cfg: Optional[Dict[str, Any]] = None) -> Tuple[str, int]:
    """Return (host, port) for the operator API; defaults to 127.0.0.1:8010."""
    server = _cfg(cfg).get("server", {}) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and host.strip():
        try:
            return host, int(port)
        except (TypeError, ValueError):
            return host, 8010
    return "127.0.0.1", 8010
# ---------- End of config_loader.py ----------
