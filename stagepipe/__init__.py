"""stagepipe package."""

from .api import RunResult, prepare, run, run_async, validate
from .core.version import __version__

__all__ = ["RunResult", "prepare", "run", "run_async", "validate", "__version__"]
