import logging
import os


_PROFILES = {"local", "production"}

_DEFAULTS = {
    "local": {
        "BASEAPP_DB_BACKEND": "sqlite",
        "BASEAPP_LOG_LEVEL": "info",
    },
    "production": {
        "BASEAPP_DB_BACKEND": "sqlite",
        "BASEAPP_LOG_LEVEL": "info",
        "BASEAPP_REQUIRE_SIGNED": "1",
        "BASEAPP_RPC_MAX": "1048576",
        "BASEAPP_QUERY_MAX_KEYS": "50",
    },
}

_REQUIREMENTS = {
    "production": [
        "BASEAPP_RPC_TOKEN",
    ],
}

LOG_LEVELS = ("debug", "info", "warn", "error", "none")


def get_profile() -> str:
    profile = os.getenv("BASEAPP_PROFILE", "local").strip().lower()
    if profile not in _PROFILES:
        return "local"
    return profile


def apply_profile_defaults() -> str:
    profile = get_profile()
    defaults = _DEFAULTS.get(profile, {})
    for key, value in defaults.items():
        os.environ.setdefault(key, str(value))
    return profile


def enforce_profile_requirements() -> None:
    profile = get_profile()
    required = _REQUIREMENTS.get(profile, [])
    if not required:
        return
    missing = [key for key in required if not os.getenv(key)]
    if missing:
        raise RuntimeError(
            f"Profile '{profile}' requires env vars: {', '.join(missing)}"
        )


def parse_log_level(level: str) -> int:
    """Map a CLI log level name to a ``logging`` level number."""
    name = level.strip().lower()
    if name not in LOG_LEVELS:
        raise ValueError(f"invalid log level {level!r}, options: {', '.join(LOG_LEVELS)}")
    if name == "none":
        return logging.CRITICAL + 10
    if name == "warn":
        return logging.WARNING
    return getattr(logging, name.upper())
