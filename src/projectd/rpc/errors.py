"""RPC error types."""

from __future__ import annotations


class RpcError(Exception):
    """Base class for worker RPC failures."""

    pass


class RpcTimeoutError(RpcError):
    """No matching response arrived before the call's deadline."""

    pass


class RpcWriteError(RpcError):
    """The command could not be written to the worker's stdin."""

    pass


class RpcProcessExitedError(RpcError):
    """The worker exited while a request was outstanding."""

    def __init__(self, request_id: str, command: str, returncode: int | None) -> None:
        super().__init__(
            f"worker process exited while awaiting response "
            f"(id={request_id}, command={command}, returncode={returncode})"
        )
        self.request_id = request_id
        self.command = command
        self.returncode = returncode
