"""apprun package."""

from .api import load, run_app
from .core.manifest import validate
from .core.result import Run
from .core.runtime import Runtime, build_runtime
from .core.version import __version__

__all__ = ["Run", "Runtime", "build_runtime", "load", "run_app", "validate", "__version__"]
