from importlib.metadata import version

from .context import Context
from .router import Outcome, Router, dispatch_outcome, http_route, path_params
from .table import Method

__all__ = [
    "Context",
    "Method",
    "Outcome",
    "Router",
    "__version__",
    "dispatch_outcome",
    "http_route",
    "path_params",
]

__version__ = version("pathmux")
