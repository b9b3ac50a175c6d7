from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "Claimer",
    "Daemon",
    "DaemonOptions",
    "Tracker",
    "YokeConfig",
    "logical_status",
    "resolve_claim",
    "validate_and_linearize",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .claim import Claimer, resolve_claim
    from .config import YokeConfig
    from .daemon import Daemon, DaemonOptions
    from .intake import validate_and_linearize
    from .status import logical_status
    from .tracker import Tracker


def __getattr__(name: str):
    if name in {"Claimer", "resolve_claim"}:
        from .claim import Claimer, resolve_claim

        return {"Claimer": Claimer, "resolve_claim": resolve_claim}[name]
    if name in {"Daemon", "DaemonOptions"}:
        from .daemon import Daemon, DaemonOptions

        return {"Daemon": Daemon, "DaemonOptions": DaemonOptions}[name]
    if name == "YokeConfig":
        from .config import YokeConfig

        return YokeConfig
    if name == "Tracker":
        from .tracker import Tracker

        return Tracker
    if name == "logical_status":
        from .status import logical_status

        return logical_status
    if name == "validate_and_linearize":
        from .intake import validate_and_linearize

        return validate_and_linearize
    raise AttributeError(f"module 'yoke' has no attribute {name!r}")
