"""RPC client for one worker process (NDJSON over stdio).

The worker reads one JSON command per line on stdin and writes one JSON
message per line on stdout. Replies carry ``type: "response"`` and echo the
request ``id``; everything else is an unsolicited event.

Example:
    ```python
    client = RpcClient("pi_project_abc", command="pi", args=["--mode", "rpc"])
    client.on("event", lambda evt: print(evt.type))
    await client.spawn()
    resp = await client.get_state()
    await client.kill()
    ```
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from projectd.protocol.framing import LineDecoder, encode_message
from projectd.protocol.messages import (
    ExtensionUiRequest,
    InboundMessage,
    Response,
    abort_command,
    get_state_command,
    new_session_command,
    parse_message,
    prompt_command,
)
from projectd.rpc.errors import (
    RpcError,
    RpcProcessExitedError,
    RpcTimeoutError,
    RpcWriteError,
)

_log = logging.getLogger("projectd.rpc")

DEFAULT_TIMEOUT = 120.0
ABORT_TIMEOUT_CEILING = 10.0
DEFAULT_KILL_GRACE = 1.0
_READ_CHUNK = 64 * 1024

# Listener kinds
EVENT = "event"
EXTENSION_UI_REQUEST = "extension_ui_request"
EXIT = "exit"
ERROR = "error"
STDERR = "stderr"

Listener = Callable[[Any], None]


def _expand_env_vars(env: dict[str, str]) -> dict[str, str]:
    """Expand ``${VAR}`` values from the controller's environment."""
    result = {}
    for key, value in env.items():
        if value.startswith("${") and value.endswith("}"):
            result[key] = os.environ.get(value[2:-1], "")
        else:
            result[key] = value
    return result


def _new_request_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass
class PendingRequest:
    """An outstanding command awaiting its response."""

    id: str
    command: str
    deadline: float  # loop.time() at which the call times out
    future: asyncio.Future[Response]


@dataclass
class ExitInfo:
    """Payload of the ``exit`` event."""

    returncode: int | None
    signal: str | None = None


class RpcClient:
    """Owns one worker process and exposes request/response plus events.

    Listener kinds for :meth:`on`:
    - ``event``: every inbound message that did not resolve a request
    - ``extension_ui_request``: the worker needs external input
    - ``exit``: the process exited (``ExitInfo``)
    - ``error``: the process could not be spawned (the ``OSError``)
    - ``stderr``: a line the worker wrote to stderr
    """

    def __init__(
        self,
        session_name: str,
        command: str = "pi",
        args: list[str] | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        abort_timeout: float = ABORT_TIMEOUT_CEILING,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ) -> None:
        self.session_name = session_name
        self.command = command
        self.args = list(args or [])
        self.cwd = cwd
        self.env = dict(env or {})
        self.timeout = timeout
        self.abort_timeout = abort_timeout
        self.kill_grace = kill_grace

        self._process: asyncio.subprocess.Process | None = None
        self._killed = False
        self._decoder = LineDecoder()
        self._pending: dict[str, PendingRequest] = {}
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._last_event_ts = time.monotonic()
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._spawn_lock = asyncio.Lock()

    # -- lifecycle ---------------------------------------------------------

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def pending_count(self) -> int:
        """Number of requests still awaiting a response."""
        return len(self._pending)

    def is_alive(self) -> bool:
        """True if the process was started, has not exited and was not killed."""
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._killed
        )

    def last_event_age(self) -> float:
        """Seconds since the worker last sent an unsolicited message.

        Replies to our own requests do not count, so a worker that answers
        ``get_state`` but produces no output still ages.
        """
        return time.monotonic() - self._last_event_ts

    async def spawn(self) -> asyncio.subprocess.Process | None:
        """Start the worker unless it is already alive.

        Returns:
            The live process, or None if it could not be started (an
            ``error`` event is emitted in that case).
        """
        async with self._spawn_lock:
            if self.is_alive():
                return self._process

            _log.info(
                "Spawning worker session=%s command=%s args=%s cwd=%s",
                self.session_name, self.command, self.args, self.cwd,
            )

            process_env = os.environ.copy()
            process_env.update(_expand_env_vars(self.env))

            try:
                process = await asyncio.create_subprocess_exec(
                    self.command,
                    *self.args,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.cwd,
                    env=process_env,
                )
            except OSError as e:
                _log.error("Worker spawn failed session=%s: %s", self.session_name, e)
                self._emit(ERROR, e)
                return None

            self._process = process
            self._killed = False
            self._decoder = LineDecoder()
            self._last_event_ts = time.monotonic()
            self._reader_task = asyncio.create_task(
                self._read_stdout(process), name=f"rpc-stdout-{self.session_name}"
            )
            self._stderr_task = asyncio.create_task(
                self._read_stderr(process), name=f"rpc-stderr-{self.session_name}"
            )
            return process

    async def kill(self) -> None:
        """Terminate the worker: SIGTERM, then SIGKILL after the grace window.

        Safe to call when the process never started or already exited.
        """
        process = self._process
        if process is None:
            return
        self._killed = True

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            else:
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
                except asyncio.TimeoutError:
                    _log.warning(
                        "Worker ignored SIGTERM, sending SIGKILL session=%s pid=%s",
                        self.session_name, process.pid,
                    )
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

        # Let the reader observe EOF so pending requests are flushed
        if self._reader_task is not None and not self._reader_task.done():
            await asyncio.wait({self._reader_task}, timeout=self.kill_grace)

    # -- events ------------------------------------------------------------

    def on(self, kind: str, callback: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        self._listeners[kind].append(callback)

        def unregister() -> None:
            if callback in self._listeners[kind]:
                self._listeners[kind].remove(callback)

        return unregister

    def _emit(self, kind: str, payload: Any) -> None:
        for callback in list(self._listeners.get(kind, ())):
            try:
                callback(payload)
            except Exception as e:
                _log.warning(
                    "Listener error session=%s kind=%s: %s", self.session_name, kind, e
                )

    # -- requests ----------------------------------------------------------

    async def send(self, command: dict[str, Any], timeout: float | None = None) -> Response:
        """Send one command and await its ``type: "response"`` reply.

        Args:
            command: Command object; an ``id`` is assigned if absent.
            timeout: Seconds to wait; defaults to the client's timeout.

        Returns:
            The matching Response (which may report ``success: false``).

        Raises:
            RpcError: The worker is not running, or the id is already in flight.
            RpcWriteError: Writing to the worker's stdin failed.
            RpcTimeoutError: No response arrived in time.
            RpcProcessExitedError: The worker exited before responding.
        """
        process = self._process
        if not self.is_alive() or process is None or process.stdin is None:
            raise RpcError(f"worker stdin is not available (session={self.session_name})")

        request_id = str(command.get("id") or _new_request_id())
        if request_id in self._pending:
            raise RpcError(f"request id {request_id} is already awaiting a response")

        command_type = str(command.get("type"))
        effective_timeout = self.timeout if timeout is None else timeout
        line = encode_message({**command, "id": request_id})

        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            id=request_id,
            command=command_type,
            deadline=loop.time() + effective_timeout,
            future=loop.create_future(),
        )
        self._pending[request_id] = pending
        _log.debug("rpc -> session=%s %s", self.session_name, line[:500].decode(errors="replace").rstrip())

        try:
            process.stdin.write(line)
            await process.stdin.drain()
        except (OSError, RuntimeError) as e:
            self._pending.pop(request_id, None)
            raise RpcWriteError(
                f"failed to write command={command_type} id={request_id}: {e}"
            ) from e

        try:
            return await asyncio.wait_for(pending.future, timeout=effective_timeout)
        except asyncio.TimeoutError as e:
            raise RpcTimeoutError(
                f"RPC timeout after {effective_timeout}s for command={command_type} id={request_id}"
            ) from e
        finally:
            if self._pending.get(request_id) is pending:
                del self._pending[request_id]

    async def new_session(self, parent_session: str | None = None) -> Response:
        return await self.send(new_session_command(parent_session))

    async def get_state(self) -> Response:
        return await self.send(get_state_command())

    async def prompt(self, message: str) -> Response:
        return await self.send(prompt_command(message))

    async def abort(self) -> Response:
        # Capped so a wedged worker cannot stall abort-then-kill
        return await self.send(abort_command(), timeout=min(self.abort_timeout, self.timeout))

    # -- stream handling ---------------------------------------------------

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        try:
            while True:
                chunk = await process.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                for data in self._decoder.feed(chunk):
                    self._dispatch(data)
            for data in self._decoder.flush():
                self._dispatch(data)
        except (OSError, ValueError) as e:
            _log.warning("Worker stdout read failed session=%s: %s", self.session_name, e)

        returncode = await process.wait()
        self._on_exit(returncode)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace")
                _log.debug("worker stderr session=%s: %s", self.session_name, text.strip()[:500])
                self._emit(STDERR, text)
        except (OSError, ValueError) as e:
            _log.debug("Worker stderr read failed session=%s: %s", self.session_name, e)

    def _dispatch(self, data: dict[str, Any]) -> None:
        message: InboundMessage = parse_message(data)

        if isinstance(message, Response):
            pending = self._pending.pop(message.id, None)
            if pending is not None:
                if not pending.future.done():
                    pending.future.set_result(message)
                return
            _log.debug(
                "Unmatched response session=%s id=%s command=%s",
                self.session_name, message.id, message.command,
            )
            self._emit(EVENT, message)
            return

        self._last_event_ts = time.monotonic()

        if isinstance(message, ExtensionUiRequest):
            _log.info(
                "Worker needs input session=%s method=%s title=%s",
                self.session_name, message.method, message.title,
            )
            self._emit(EXTENSION_UI_REQUEST, message)

        self._emit(EVENT, message)

    def _on_exit(self, returncode: int | None) -> None:
        sig_name = None
        if returncode is not None and returncode < 0:
            try:
                sig_name = signal.Signals(-returncode).name
            except ValueError:
                sig_name = str(-returncode)

        _log.warning(
            "Worker exited session=%s returncode=%s signal=%s",
            self.session_name, returncode, sig_name,
        )

        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            if not request.future.done():
                request.future.set_exception(
                    RpcProcessExitedError(request.id, request.command, returncode)
                )

        self._emit(EXIT, ExitInfo(returncode=returncode, signal=sig_name))
