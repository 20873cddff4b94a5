"""Worker RPC client over newline-delimited JSON stdio."""

from projectd.rpc.client import ExitInfo, PendingRequest, RpcClient
from projectd.rpc.errors import (
    RpcError,
    RpcProcessExitedError,
    RpcTimeoutError,
    RpcWriteError,
)

__all__ = [
    "ExitInfo",
    "PendingRequest",
    "RpcClient",
    "RpcError",
    "RpcProcessExitedError",
    "RpcTimeoutError",
    "RpcWriteError",
]
