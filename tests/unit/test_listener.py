"""
Unit tests for the embedded listener and its timeout middleware.
"""
import asyncio

import pytest

from autocert.errors import HTTPServerError, ListenerError, ShutdownError
from autocert.listener import TimeoutMiddleware, Listener


HTTP_SCOPE = {"type": "http", "method": "POST", "path": "/upload", "headers": []}


class Recorder:
    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    @property
    def status(self):
        starts = [m for m in self.messages if m["type"] == "http.response.start"]
        return starts[0]["status"] if starts else None


async def _ok_app(scope, receive, send):
    if scope["type"] != "http":
        return
    while True:
        message = await receive()
        if not message.get("more_body"):
            break
    await send({"type": "http.response.start", "status": 200, "headers": []})
    await send({"type": "http.response.body", "body": b"ok"})


class TestTimeoutMiddleware:
    """Tests for TimeoutMiddleware."""

    @pytest.mark.asyncio
    async def test_passes_through_fast_requests(self):
        async def receive():
            return {"type": "http.request", "body": b"data", "more_body": False}

        send = Recorder()
        await TimeoutMiddleware(_ok_app, read_timeout=1, write_timeout=1)(HTTP_SCOPE, receive, send)

        assert send.status == 200

    @pytest.mark.asyncio
    async def test_slow_body_gets_408(self):
        """A client that stalls mid-body hits the read timeout."""
        chunks = [{"type": "http.request", "body": b"part", "more_body": True}]

        async def receive():
            if chunks:
                return chunks.pop()
            await asyncio.sleep(10)

        send = Recorder()
        await TimeoutMiddleware(_ok_app, read_timeout=0.05)(HTTP_SCOPE, receive, send)

        assert send.status == 408

    @pytest.mark.asyncio
    async def test_slow_handler_gets_503(self):
        async def slow_app(scope, receive, send):
            await asyncio.sleep(10)

        async def receive():
            return {"type": "http.request", "body": b"", "more_body": False}

        send = Recorder()
        await TimeoutMiddleware(slow_app, write_timeout=0.05)(HTTP_SCOPE, receive, send)

        assert send.status == 503

    @pytest.mark.asyncio
    async def test_no_second_response_after_start(self):
        """Once headers are out, a timeout only abandons the exchange."""
        async def streaming_app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await asyncio.sleep(10)

        async def receive():
            return {"type": "http.request", "body": b"", "more_body": False}

        send = Recorder()
        await TimeoutMiddleware(streaming_app, write_timeout=0.05)(HTTP_SCOPE, receive, send)

        assert [m["type"] for m in send.messages] == ["http.response.start"]

    @pytest.mark.asyncio
    async def test_body_complete_disables_read_deadline(self):
        """Waiting for disconnect after the body is not a read timeout."""
        calls = []

        async def app(scope, receive, send):
            await receive()
            assert (await receive())["type"] == "http.disconnect"
            await send({"type": "http.response.start", "status": 204, "headers": []})
            await send({"type": "http.response.body", "body": b""})

        async def receive():
            calls.append(1)
            if len(calls) == 1:
                return {"type": "http.request", "body": b"", "more_body": False}
            await asyncio.sleep(0.1)
            return {"type": "http.disconnect"}

        send = Recorder()
        await TimeoutMiddleware(app, read_timeout=0.05)(HTTP_SCOPE, receive, send)

        assert send.status == 204

    @pytest.mark.asyncio
    async def test_non_http_scopes_untouched(self):
        seen = []

        async def app(scope, receive, send):
            seen.append(scope["type"])

        await TimeoutMiddleware(app, read_timeout=0.01)({"type": "lifespan"}, None, None)

        assert seen == ["lifespan"]


class TestListener:
    """Tests for Listener."""

    def test_uvicorn_options(self):
        listener = Listener("HTTP", _ok_app, "", 8080, idle_timeout=42, max_header_bytes=4096)
        config = listener.server.config

        assert listener.address == "0.0.0.0:8080"
        assert config.timeout_keep_alive == 42
        assert config.h11_max_incomplete_event_size == 4096
        assert config.server_header is False
        assert config.log_config is None

    @pytest.mark.asyncio
    async def test_bind_failure_uses_error_class(self, occupied_port):
        listener = Listener("HTTP", _ok_app, "127.0.0.1", occupied_port, error_class=HTTPServerError)

        with pytest.raises(HTTPServerError, match="failed to start"):
            await asyncio.wait_for(listener.serve(), 10)

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self):
        listener = Listener("HTTP", _ok_app, "127.0.0.1", 0)

        await listener.stop(1)

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        listener = Listener("HTTP", _ok_app, "127.0.0.1", 0)
        listener.start()
        for _ in range(500):
            if listener.started:
                break
            await asyncio.sleep(0.01)

        assert listener.bound_port
        await listener.stop(5)
        assert listener.task.done()
        assert listener.task.exception() is None

    @pytest.mark.asyncio
    async def test_unexpected_exit_is_an_error(self):
        listener = Listener("HTTP", _ok_app, "127.0.0.1", 0)
        listener.server.should_exit = True

        with pytest.raises(ListenerError, match="stopped unexpectedly"):
            await asyncio.wait_for(listener.serve(), 10)

    @pytest.mark.asyncio
    async def test_drain_timeout_raises_shutdown_error(self, monkeypatch):
        monkeypatch.setattr("autocert.listener.FORCE_EXIT_GRACE", 0.01)
        listener = Listener("HTTP", _ok_app, "127.0.0.1", 0)

        async def never_exits():
            await asyncio.sleep(10)

        listener.task = asyncio.create_task(never_exits())

        with pytest.raises(ShutdownError, match="did not drain"):
            await listener.stop(0.01)
        assert listener.server.force_exit
