"""
Environment variable loading for TrustPulse.

- Loads .env from project root when available.
- Typed getters with defaults: get_str, get_float, get_int, get_bool.
- LOG_LEVEL / LOG_FORMAT are read by trustpulse_logging, not here.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Project root: config is backend_trustpulse/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"

ENV_PREFIX = "TRUSTPULSE_"
_TRUE_VALUES = ("1", "true", "yes", "on")


def load_trustpulse_env() -> None:
    """Load .env from project root. Safe to call multiple times; never overrides real env."""
    if _ENV_PATH.is_file():
        load_dotenv(_ENV_PATH, override=False)


def get_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip() or default


def get_float(name: str, default: float) -> float:
    raw = get_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def get_int(name: str, default: int) -> int:
    raw = get_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def get_bool(name: str, default: bool = False) -> bool:
    raw = get_str(name).lower()
    if not raw:
        return default
    return raw in _TRUE_VALUES


def prefixed(name: str) -> str:
    """TRUSTPULSE_<NAME> for component thresholds."""
    return ENV_PREFIX + name.upper()
