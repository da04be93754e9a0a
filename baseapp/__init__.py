from .config import apply_profile_defaults

apply_profile_defaults()

__all__ = [
    "app",
    "batch",
    "cli",
    "config",
    "crypto",
    "db",
    "errors",
    "kvstore",
    "merkle",
    "rpc",
    "tx",
    "types",
    "utils",
    "wallet",
]
