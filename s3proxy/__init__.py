"""Stream objects from a single S3 bucket over HTTP."""

from ._version import __version__
from .app import create_app
from .coordinator import ResponseCoordinator, Signal, pipe
from .errors import UserException
from .outcome import Fatal, NonFatal, Reason, Success, classify
from .proxy import ProxySettings, S3Proxy
from .request import ParsedRequest, StorageParams, parse_request, to_storage_params
from .storage import ErrorKind, S3Backend, StorageError, StorageResult

__all__ = [
    "ErrorKind",
    "Fatal",
    "NonFatal",
    "ParsedRequest",
    "ProxySettings",
    "Reason",
    "ResponseCoordinator",
    "S3Backend",
    "S3Proxy",
    "Signal",
    "StorageError",
    "StorageParams",
    "StorageResult",
    "Success",
    "UserException",
    "__version__",
    "classify",
    "create_app",
    "parse_request",
    "pipe",
    "to_storage_params",
]
