"""
Embedded uvicorn listeners.

Each listener is a uvicorn server running as a task inside the caller's event
loop instead of a process of its own: signal handling stays with the host
application, the TLS context is injected directly, and a bind failure becomes
an exception instead of a process exit.
"""
import asyncio
import contextlib
import logging
import ssl
from typing import Optional, Type

import uvicorn

from .errors import ListenerError, ShutdownError


logger = logging.getLogger(__name__)

# Time allowed for uvicorn to close connections after a forced exit
FORCE_EXIT_GRACE = 5.0


class RequestReadTimeout(Exception):
    """The client did not deliver the request body in time."""


class TimeoutMiddleware:
    """
    ASGI middleware enforcing read and write deadlines per request.

    The read deadline bounds each wait for request body chunks until the body
    is complete. The write deadline bounds the whole exchange. When a deadline
    passes before the response has started, 408 (read) or 503 (write) is sent;
    otherwise the connection is abandoned. A timeout of 0 disables the check.
    """

    def __init__(self, app, read_timeout: float = 0, write_timeout: float = 0):
        self.app = app
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        body_complete = False
        response_started = False

        async def bounded_receive():
            nonlocal body_complete
            if body_complete or not self.read_timeout:
                return await receive()
            try:
                message = await asyncio.wait_for(receive(), self.read_timeout)
            except asyncio.TimeoutError:
                raise RequestReadTimeout() from None
            if message["type"] != "http.request" or not message.get("more_body", False):
                body_complete = True
            return message

        async def tracking_send(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            if self.write_timeout:
                await asyncio.wait_for(self.app(scope, bounded_receive, tracking_send), self.write_timeout)
            else:
                await self.app(scope, bounded_receive, tracking_send)
        except RequestReadTimeout:
            logger.warning("[LISTENER] Read timeout on %s %s", scope.get("method"), scope.get("path"))
            if not response_started:
                await _send_plain(send, 408, b"request timeout")
        except asyncio.TimeoutError:
            logger.warning("[LISTENER] Write timeout on %s %s", scope.get("method"), scope.get("path"))
            if not response_started:
                await _send_plain(send, 503, b"response timeout")


async def _send_plain(send, status: int, body: bytes) -> None:
    await send({
        "type": "http.response.start",
        "status": status,
        "headers": [
            (b"content-type", b"text/plain; charset=utf-8"),
            (b"content-length", str(len(body)).encode("ascii")),
            (b"connection", b"close"),
        ],
    })
    await send({"type": "http.response.body", "body": body})


class EmbeddedConfig(uvicorn.Config):
    """uvicorn config that accepts a ready-made SSLContext."""

    def __init__(self, app, ssl_context: Optional[ssl.SSLContext] = None, **kwargs):
        super().__init__(app, **kwargs)
        self._ssl_context = ssl_context

    def load(self) -> None:
        super().load()
        self.ssl = self._ssl_context


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to the host application."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class Listener:
    """One named uvicorn listener with an explicit stop protocol."""

    def __init__(
        self,
        name: str,
        app,
        host: str,
        port: int,
        ssl_context: Optional[ssl.SSLContext] = None,
        read_timeout: float = 0,
        write_timeout: float = 0,
        idle_timeout: float = 60,
        max_header_bytes: Optional[int] = None,
        error_class: Type[ListenerError] = ListenerError,
    ):
        self.name = name
        self.host = host or "0.0.0.0"
        self.port = port
        self._error_class = error_class
        self._exit_requested = False
        self.task: Optional[asyncio.Task] = None

        options = dict(
            host=self.host,
            port=port,
            http="h11",
            log_config=None,
            access_log=False,
            lifespan="auto",
            proxy_headers=False,
            server_header=False,
            timeout_keep_alive=idle_timeout,
        )
        if max_header_bytes:
            options["h11_max_incomplete_event_size"] = max_header_bytes

        wrapped = TimeoutMiddleware(app, read_timeout=read_timeout, write_timeout=write_timeout)
        self.server = EmbeddedServer(EmbeddedConfig(wrapped, ssl_context=ssl_context, **options))

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def started(self) -> bool:
        return self.server.started

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port, useful when configured with port 0."""
        for server in getattr(self.server, "servers", []):
            for sock in server.sockets:
                return sock.getsockname()[1]
        return None

    async def serve(self) -> None:
        """
        Run until stop is requested.

        Raises:
            ListenerError: The socket could not be bound or startup failed.
        """
        logger.info("[LISTENER] Starting %s listener on %s", self.name, self.address)
        try:
            await self.server.serve()
        except SystemExit:
            # uvicorn exits the process when it cannot bind
            raise self._error_class(f"{self.name} listener failed to start on {self.address}") from None
        except OSError as e:
            raise self._error_class(f"{self.name} listener failed on {self.address}: {e}") from e
        finally:
            # uvicorn skips its own shutdown when asked to exit during startup
            for server in getattr(self.server, "servers", []):
                server.close()

        if not self._exit_requested:
            raise self._error_class(f"{self.name} listener on {self.address} stopped unexpectedly")
        logger.info("[LISTENER] %s listener on %s stopped", self.name, self.address)

    def request_exit(self) -> None:
        self._exit_requested = True
        self.server.should_exit = True

    def force_exit(self) -> None:
        self._exit_requested = True
        self.server.force_exit = True

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.serve(), name=f"autocert-{self.name.lower()}")
        return self.task

    async def stop(self, timeout: Optional[float]) -> None:
        """
        Stop accepting connections and wait for in-flight requests to drain.

        A timeout of None waits indefinitely.

        Raises:
            ShutdownError: Connections were still open after timeout seconds;
                they are closed forcibly.
        """
        if self.task is None or self.task.done():
            self.request_exit()
            return

        self.request_exit()
        done, _ = await asyncio.wait({self.task}, timeout=timeout)
        if done:
            return

        logger.warning("[LISTENER] %s listener did not drain within %ss, forcing close", self.name, timeout)
        self.force_exit()
        done, _ = await asyncio.wait({self.task}, timeout=FORCE_EXIT_GRACE)
        if not done:
            self.task.cancel()
        raise ShutdownError(f"{self.name} listener did not drain within {timeout}s")
