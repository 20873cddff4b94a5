"""Tests for RpcClient against the fake worker process."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

import pytest

from projectd.protocol.messages import ExtensionUiRequest, Response, WorkerEvent
from projectd.rpc.client import (
    ERROR,
    EVENT,
    EXIT,
    EXTENSION_UI_REQUEST,
    STDERR,
    ExitInfo,
    RpcClient,
    _expand_env_vars,
)
from projectd.rpc.errors import RpcError, RpcProcessExitedError, RpcTimeoutError

MakeClient = Callable[..., RpcClient]


@pytest.fixture
async def make_client(worker_command: str, worker_args: list[str]) -> AsyncIterator[MakeClient]:
    """Build clients for the fake worker; every client is killed afterwards."""
    clients: list[RpcClient] = []

    def factory(*flags: str, **kwargs) -> RpcClient:
        kwargs.setdefault("timeout", 5.0)
        kwargs.setdefault("kill_grace", 0.5)
        client = RpcClient(
            "pi_project_test",
            command=worker_command,
            args=[*worker_args, *flags],
            **kwargs,
        )
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.kill()


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestExpandEnvVars:
    """Tests for ${VAR} expansion in worker env."""

    def test_expands_reference(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROJECTD_TEST_SECRET", "s3cret")
        assert _expand_env_vars({"KEY": "${PROJECTD_TEST_SECRET}"}) == {"KEY": "s3cret"}

    def test_missing_reference_is_empty(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PROJECTD_TEST_MISSING", raising=False)
        assert _expand_env_vars({"KEY": "${PROJECTD_TEST_MISSING}"}) == {"KEY": ""}

    def test_literal_kept(self) -> None:
        assert _expand_env_vars({"KEY": "plain"}) == {"KEY": "plain"}


class TestRpcClientLifecycle:
    """Tests for spawn and kill."""

    @pytest.mark.asyncio
    async def test_spawn_starts_process(self, make_client: MakeClient) -> None:
        client = make_client()
        assert client.is_alive() is False

        process = await client.spawn()
        assert process is not None
        assert client.pid == process.pid
        assert client.is_alive() is True

    @pytest.mark.asyncio
    async def test_spawn_is_idempotent(self, make_client: MakeClient) -> None:
        """Spawning a live client returns the same process."""
        client = make_client()
        first = await client.spawn()
        second = await client.spawn()
        assert first is second

    @pytest.mark.asyncio
    async def test_spawn_failure_emits_error(self) -> None:
        """A missing executable emits an error event instead of raising."""
        client = RpcClient("pi_project_missing", command="/nonexistent/projectd-worker")
        errors: list[Exception] = []
        client.on(ERROR, errors.append)

        assert await client.spawn() is None
        assert len(errors) == 1
        assert isinstance(errors[0], OSError)
        assert client.is_alive() is False

    @pytest.mark.asyncio
    async def test_kill_terminates(self, make_client: MakeClient) -> None:
        client = make_client()
        exits: list[ExitInfo] = []
        client.on(EXIT, exits.append)
        await client.spawn()

        await client.kill()

        assert client.is_alive() is False
        assert client.returncode is not None
        await wait_for_condition(lambda: len(exits) == 1)
        assert exits[0].signal == "SIGTERM"

    @pytest.mark.asyncio
    async def test_kill_escalates_to_sigkill(self, make_client: MakeClient) -> None:
        """A worker ignoring SIGTERM is killed after the grace window."""
        client = make_client("--ignore-term", kill_grace=0.2)
        await client.spawn()
        # Let the worker install its SIGTERM handler
        await client.get_state()

        await client.kill()

        assert client.returncode == -9

    @pytest.mark.asyncio
    async def test_kill_without_process_is_noop(self) -> None:
        client = RpcClient("pi_project_never")
        await client.kill()
        assert client.is_alive() is False

    @pytest.mark.asyncio
    async def test_kill_twice_is_safe(self, make_client: MakeClient) -> None:
        client = make_client()
        await client.spawn()
        await client.kill()
        await client.kill()
        assert client.is_alive() is False

    @pytest.mark.asyncio
    async def test_env_and_cwd_passed(self, make_client: MakeClient, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("PROJECTD_TEST_TAG", "tagged")
        client = make_client(cwd=str(tmp_path), env={"FAKE_WORKER_TAG": "${PROJECTD_TEST_TAG}"})
        await client.spawn()

        resp = await client.get_state()

        assert resp.data["cwd"] == str(tmp_path)
        assert resp.data["tag"] == "tagged"

    @pytest.mark.asyncio
    async def test_stderr_forwarded(self, make_client: MakeClient) -> None:
        client = make_client("--stderr", "warming up")
        lines: list[str] = []
        client.on(STDERR, lines.append)
        await client.spawn()

        await wait_for_condition(lambda: bool(lines))
        assert lines[0].strip() == "warming up"


class TestRpcClientRequests:
    """Tests for request/response correlation."""

    @pytest.mark.asyncio
    async def test_get_state(self, make_client: MakeClient) -> None:
        client = make_client()
        await client.spawn()

        resp = await client.get_state()

        assert isinstance(resp, Response)
        assert resp.success is True
        assert resp.command == "get_state"
        assert resp.data["isStreaming"] is False
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_new_session_with_parent(self, make_client: MakeClient) -> None:
        client = make_client()
        await client.spawn()

        resp = await client.new_session("parent-1")

        assert resp.success is True
        assert resp.data == {"parentSession": "parent-1"}

    @pytest.mark.asyncio
    async def test_error_response_is_returned(self, make_client: MakeClient) -> None:
        """success=false is a valid reply, not an exception."""
        client = make_client("--fail-new-session")
        await client.spawn()

        resp = await client.new_session()

        assert resp.success is False
        assert resp.error == "cannot start session"

    @pytest.mark.asyncio
    async def test_concurrent_requests_correlated(self, make_client: MakeClient) -> None:
        """Each caller receives the reply carrying its own id."""
        client = make_client()
        await client.spawn()

        results = await asyncio.gather(
            client.get_state(),
            client.prompt("hello"),
            client.send({"type": "get_state", "id": "fixed-id"}),
        )

        assert [r.command for r in results] == ["get_state", "prompt", "get_state"]
        assert results[2].id == "fixed-id"
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_split_responses(self, make_client: MakeClient) -> None:
        """Replies written in pieces are reassembled."""
        client = make_client("--split")
        await client.spawn()

        resp = await client.get_state()

        assert resp.success is True

    @pytest.mark.asyncio
    async def test_malformed_line_skipped(self, make_client: MakeClient) -> None:
        client = make_client("--garbage")
        await client.spawn()

        resp = await client.get_state()

        assert resp.success is True

    @pytest.mark.asyncio
    async def test_send_before_spawn_raises(self, make_client: MakeClient) -> None:
        client = make_client()
        with pytest.raises(RpcError, match="stdin is not available"):
            await client.get_state()

    @pytest.mark.asyncio
    async def test_send_after_kill_raises(self, make_client: MakeClient) -> None:
        """A killed client never respawns itself on send."""
        client = make_client()
        await client.spawn()
        await client.kill()

        with pytest.raises(RpcError):
            await client.get_state()
        assert client.is_alive() is False

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, make_client: MakeClient) -> None:
        client = make_client("--silent")
        await client.spawn()

        first = asyncio.create_task(client.send({"type": "get_state", "id": "dup"}, timeout=2.0))
        await wait_for_condition(lambda: client.pending_count == 1)

        with pytest.raises(RpcError, match="already awaiting"):
            await client.send({"type": "get_state", "id": "dup"})

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert client.pending_count == 0


class TestRpcClientFailures:
    """Tests for timeouts and process exit."""

    @pytest.mark.asyncio
    async def test_timeout_clears_pending(self, make_client: MakeClient) -> None:
        """A timed-out request leaves no entry behind and its id can be reused."""
        client = make_client("--silent")
        await client.spawn()

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(RpcTimeoutError, match="RPC timeout after 0.05s for command=get_state id=t1"):
            await client.send({"type": "get_state", "id": "t1"}, timeout=0.05)
        assert client.pending_count == 0
        assert 0.04 <= loop.time() - started < 1.0

        with pytest.raises(RpcTimeoutError):
            await client.send({"type": "get_state", "id": "t1"}, timeout=0.05)
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_abort_uses_capped_timeout(self, make_client: MakeClient) -> None:
        client = make_client("--silent", timeout=5.0, abort_timeout=0.05)
        await client.spawn()

        with pytest.raises(RpcTimeoutError, match="command=abort"):
            await client.abort()

    @pytest.mark.asyncio
    async def test_exit_rejects_pending(self, make_client: MakeClient) -> None:
        """Requests in flight when the worker exits fail promptly."""
        client = make_client("--exit-after", "1")
        exits: list[ExitInfo] = []
        client.on(EXIT, exits.append)
        await client.spawn()

        with pytest.raises(RpcProcessExitedError) as exc_info:
            await client.get_state()

        assert exc_info.value.command == "get_state"
        assert exc_info.value.returncode == 3
        assert client.pending_count == 0
        await wait_for_condition(lambda: len(exits) == 1)
        assert exits[0].returncode == 3
        assert exits[0].signal is None
        assert client.is_alive() is False

    @pytest.mark.asyncio
    async def test_exit_rejects_every_pending(self, make_client: MakeClient) -> None:
        """All outstanding requests fail together when the worker dies."""
        client = make_client("--silent", "--exit-after", "3")
        await client.spawn()

        results = await asyncio.gather(
            client.get_state(),
            client.prompt("one"),
            client.send({"type": "get_state"}),
            return_exceptions=True,
        )

        assert all(isinstance(r, RpcProcessExitedError) for r in results)
        assert client.pending_count == 0


class TestRpcClientEvents:
    """Tests for event listeners."""

    @pytest.mark.asyncio
    async def test_unsolicited_event(self, make_client: MakeClient) -> None:
        client = make_client()
        events: list = []
        client.on(EVENT, events.append)
        await client.spawn()

        await client.prompt("do work")

        await wait_for_condition(lambda: any(e.type == "agent_start" for e in events))
        start = next(e for e in events if e.type == "agent_start")
        assert isinstance(start, WorkerEvent)
        assert start.model_extra["message"] == "do work"

    @pytest.mark.asyncio
    async def test_matched_response_not_emitted(self, make_client: MakeClient) -> None:
        client = make_client()
        events: list = []
        client.on(EVENT, events.append)
        await client.spawn()

        await client.get_state()

        assert not any(isinstance(e, Response) for e in events)

    @pytest.mark.asyncio
    async def test_unmatched_response_emitted_as_event(self, make_client: MakeClient) -> None:
        client = make_client()
        events: list = []
        client.on(EVENT, events.append)
        await client.spawn()

        await client.send({"type": "emit_unmatched"})

        ghosts = [e for e in events if isinstance(e, Response)]
        assert len(ghosts) == 1
        assert ghosts[0].id == "nobody-waits"

    @pytest.mark.asyncio
    async def test_extension_ui_request(self, make_client: MakeClient) -> None:
        """Input requests reach both the dedicated and the generic listeners."""
        client = make_client("--needs-input")
        requests: list = []
        events: list = []
        client.on(EXTENSION_UI_REQUEST, requests.append)
        client.on(EVENT, events.append)
        await client.spawn()

        await client.new_session()

        await wait_for_condition(lambda: bool(requests))
        assert isinstance(requests[0], ExtensionUiRequest)
        assert requests[0].title == "Proceed?"
        assert requests[0] in events

    @pytest.mark.asyncio
    async def test_extension_ui_request_numeric_id(self, make_client: MakeClient) -> None:
        """A non-string id still reaches the dedicated listener."""
        client = make_client("--needs-input", "--numeric-ui-id")
        requests: list = []
        client.on(EXTENSION_UI_REQUEST, requests.append)
        await client.spawn()

        await client.new_session()

        await wait_for_condition(lambda: bool(requests))
        assert isinstance(requests[0], ExtensionUiRequest)
        assert requests[0].id == 7

    @pytest.mark.asyncio
    async def test_responses_do_not_reset_event_age(self, make_client: MakeClient) -> None:
        """Polling replies leave the event age growing; events reset it."""
        client = make_client()
        await client.spawn()
        await asyncio.sleep(0.15)

        await client.get_state()
        assert client.last_event_age() >= 0.1

        await client.prompt("do work")
        await wait_for_condition(lambda: client.last_event_age() < 0.1)

    @pytest.mark.asyncio
    async def test_unregister_listener(self, make_client: MakeClient) -> None:
        client = make_client()
        events: list = []
        unregister = client.on(EVENT, events.append)
        unregister()
        await client.spawn()

        await client.prompt("do work")
        await client.get_state()

        assert events == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_reader(self, make_client: MakeClient) -> None:
        client = make_client()

        def boom(_evt) -> None:
            raise RuntimeError("listener bug")

        client.on(EVENT, boom)
        await client.spawn()

        await client.prompt("do work")
        resp = await client.get_state()
        assert resp.success is True
