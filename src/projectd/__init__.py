"""projectd: per-project supervisor for long-running RPC worker processes."""

__version__ = "0.1.0"

from projectd.config import Config, get_config, load_config
from projectd.dispatch import Dispatcher, FileWorkSource, WorkItem
from projectd.rpc import RpcClient, RpcError, RpcProcessExitedError, RpcTimeoutError
from projectd.session import SessionContext, SessionSupervisor

__all__ = [
    "Config",
    "get_config",
    "load_config",
    "Dispatcher",
    "FileWorkSource",
    "WorkItem",
    "RpcClient",
    "RpcError",
    "RpcProcessExitedError",
    "RpcTimeoutError",
    "SessionContext",
    "SessionSupervisor",
]
