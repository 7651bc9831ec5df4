"""Top-level alias of ``scripts.config`` for scripts run from the repository root."""
from scripts.config import *  # noqa: F403, F401
from scripts.config import __all__  # noqa: F401
