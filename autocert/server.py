"""
Dual-listener server with per-hostname TLS.

AutoCertServer runs two listeners side by side:

- port 80 answers ACME challenges, redirects domains that already have a
  certificate to HTTPS, and shows a status page for domains still being
  provisioned (or whose provisioning failed);
- port 443 terminates TLS, choosing the certificate from the SNI name during
  the handshake, and hands requests to the application.

Certificates are never issued from here. Whoever drives provisioning updates
the domain store, and the certificate manager serves whatever exists on disk.
"""
import asyncio
import concurrent.futures
import logging
import ssl
import threading
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, field_validator

from .addresses import split_host_port, strip_port
from .cert_manager import CertificateManager, ClientHello
from .domains import DomainInfo, DomainStatus, DomainStore
from .errors import (
    AutoCertError,
    DomainLookupError,
    DomainNotRegisteredError,
    HTTPServerError,
    HTTPSServerError,
    NoCertManagerError,
    NoDomainStoreError,
    NoServerNameError,
    ServerAlreadyRunningError,
    ShutdownError,
)
from .listener import Listener
from .status_pages import StatusPageHandler, StatusPages
from .tls_config import TLSConfig, TLSConfigBuilder, TLSPreset


logger = logging.getLogger(__name__)

DEFAULT_HTTP_ADDR = ":80"
DEFAULT_HTTPS_ADDR = ":443"
DEFAULT_READ_TIMEOUT = 15.0
DEFAULT_WRITE_TIMEOUT = 15.0
DEFAULT_IDLE_TIMEOUT = 60.0
DEFAULT_SHUTDOWN_TIMEOUT = 30.0
DEFAULT_MAX_HEADER_BYTES = 1 << 20

# Domain lookups during a handshake get their own deadline; the handshake
# callback has no caller context to inherit one from. The callback runs on the
# event loop thread and blocks it while waiting, so a store slower than this
# stalls every connection on both listeners, not just the one handshake.
# Stores should answer in milliseconds.
HANDSHAKE_LOOKUP_TIMEOUT = 10.0
HANDSHAKE_LOOKUP_WORKERS = 8

_HTTP_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class AutoCertConfig(BaseModel):
    """Listener addresses and timeouts (seconds; 0 disables a timeout)."""

    model_config = ConfigDict(frozen=True)

    http_addr: str = DEFAULT_HTTP_ADDR
    https_addr: str = DEFAULT_HTTPS_ADDR
    read_timeout: float = DEFAULT_READ_TIMEOUT
    write_timeout: float = DEFAULT_WRITE_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    max_header_bytes: int = DEFAULT_MAX_HEADER_BYTES
    tls_preset: TLSPreset = TLSPreset.DEFAULT

    @field_validator("http_addr", "https_addr")
    @classmethod
    def validate_addr(cls, v: str) -> str:
        split_host_port(v)
        return v.strip()

    @field_validator("read_timeout", "write_timeout", "idle_timeout", "shutdown_timeout", "max_header_bytes")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @classmethod
    def from_settings(cls, settings) -> "AutoCertConfig":
        return cls(
            http_addr=settings.http_addr,
            https_addr=settings.https_addr,
            read_timeout=settings.read_timeout,
            write_timeout=settings.write_timeout,
            idle_timeout=settings.idle_timeout,
            shutdown_timeout=settings.shutdown_timeout,
            max_header_bytes=settings.max_header_bytes,
            tls_preset=settings.tls_preset,
        )


def _lookup_in_worker(store: DomainStore, domain: str, timeout: float) -> Optional[DomainInfo]:
    """Run one store lookup on a private event loop with its own deadline."""

    async def bounded() -> Optional[DomainInfo]:
        return await asyncio.wait_for(store.get_domain(domain), timeout)

    return asyncio.run(bounded())


class AutoCertServer:
    """
    Serves HTTP and HTTPS for a dynamic set of domains.

    Example:
        server = AutoCertServer(FileCertificateManager("/certs"), store)
        await server.run(app)
    """

    def __init__(
        self,
        cert_manager: CertificateManager,
        domain_store: DomainStore,
        config: Optional[AutoCertConfig] = None,
        status_pages: Optional[StatusPageHandler] = None,
        tls_config: Optional[TLSConfig] = None,
    ):
        """
        Args:
            cert_manager: Source of certificates and challenge answers
            domain_store: Source of domain registrations
            config: Addresses and timeouts; defaults to :80 / :443
            status_pages: Port-80 status page handler; HTML pages by default
            tls_config: Base TLS profile for port 443; built from
                config.tls_preset when omitted

        Raises:
            ConfigurationError: A collaborator is missing or an address is malformed.
        """
        if cert_manager is None:
            raise NoCertManagerError()
        if domain_store is None:
            raise NoDomainStoreError()

        self.config = config or AutoCertConfig()
        self._http_host, self._http_port = split_host_port(self.config.http_addr)
        self._https_host, self._https_port = split_host_port(self.config.https_addr)

        self._cert_manager = cert_manager
        self._domain_store = domain_store
        self._pages = status_pages if status_pages is not None else StatusPages()
        self._tls_config = tls_config

        self._lock = threading.Lock()
        self._shutdown_lock = asyncio.Lock()
        self._running = False
        self._listeners: list[Listener] = []
        self._lookup_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=HANDSHAKE_LOOKUP_WORKERS,
            thread_name_prefix="autocert-sni",
        )

        self.http_app = self.create_http_app()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def listeners(self) -> list[Listener]:
        with self._lock:
            return list(self._listeners)

    def set_tls_config(self, tls_config: TLSConfig) -> None:
        """Replace the base TLS profile. Takes effect on the next run()."""
        with self._lock:
            self._tls_config = tls_config

    # =========================================================================
    # Port 80
    # =========================================================================

    def create_http_app(self) -> FastAPI:
        """Build the catch-all port-80 application."""
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.api_route("/{path:path}", methods=_HTTP_METHODS, include_in_schema=False)
        async def http_entry(request: Request) -> Response:
            return await self.handle_http(request)

        return app

    async def handle_http(self, request: Request) -> Response:
        """Challenge, redirect or status page for one plain-HTTP request."""
        challenge = await self._cert_manager.handle_challenge(request)
        if challenge is not None:
            return challenge

        host = request.headers.get("host", "")
        domain = strip_port(host).lower().rstrip(".")

        try:
            info = await self._domain_store.get_domain(domain)
        except Exception as e:
            logger.error("[AUTOCERT] Domain lookup failed for %r: %s", domain, e)
            return PlainTextResponse("404 page not found", status_code=404)

        if info is None:
            logger.debug("[AUTOCERT] Request for unregistered domain %r", domain)
            return self._pages.not_found()

        if self._cert_manager.exists(domain):
            target = f"https://{host}{request.url.path}"
            if request.url.query:
                target += f"?{request.url.query}"
            return RedirectResponse(target, status_code=301)

        if info.status == DomainStatus.FAILED:
            return self._pages.failed(info)
        return self._pages.provisioning(info)

    # =========================================================================
    # Port 443
    # =========================================================================

    def _lookup_for_handshake(self, domain: str) -> Optional[DomainInfo]:
        """
        Look a domain up from inside the synchronous SNI callback.

        Blocks the calling thread, which is the event loop thread during a
        real handshake, for up to HANDSHAKE_LOOKUP_TIMEOUT seconds.
        """
        future = self._lookup_pool.submit(
            _lookup_in_worker, self._domain_store, domain, HANDSHAKE_LOOKUP_TIMEOUT
        )
        try:
            return future.result(timeout=HANDSHAKE_LOOKUP_TIMEOUT)
        except (concurrent.futures.TimeoutError, asyncio.TimeoutError) as e:
            future.cancel()
            raise DomainLookupError(domain, TimeoutError("lookup timed out")) from e
        except Exception as e:
            raise DomainLookupError(domain, e) from e

    def get_certificate(self, hello: ClientHello) -> ssl.SSLContext:
        """
        Resolve the certificate context for a handshake.

        Raises:
            NoServerNameError: The client sent no SNI.
            DomainLookupError: The store failed or timed out.
            DomainNotRegisteredError: The domain is unknown.
            AutoCertError: The certificate manager has no certificate.
        """
        domain = (hello.server_name or "").strip().lower().rstrip(".")
        if not domain:
            raise NoServerNameError()

        info = self._lookup_for_handshake(domain)
        if info is None:
            raise DomainNotRegisteredError(domain)

        return self._cert_manager.get_certificate(ClientHello(server_name=domain))

    def _sni_callback(self, ssl_object, server_name, context):
        try:
            ssl_object.context = self.get_certificate(ClientHello(server_name=server_name or ""))
        except (NoServerNameError, DomainNotRegisteredError) as e:
            logger.debug("[AUTOCERT] Handshake rejected: %s", e)
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        except DomainLookupError as e:
            logger.warning("[AUTOCERT] Handshake rejected: %s", e)
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        except AutoCertError as e:
            logger.info("[AUTOCERT] No certificate yet for %s: %s", server_name, e)
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        except Exception as e:
            logger.exception("[AUTOCERT] Certificate selection failed for %s: %s", server_name, e)
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        return None

    def build_tls_context(self) -> ssl.SSLContext:
        """Base TLS context for port 443 with per-SNI certificate selection."""
        base = self._tls_config or TLSConfigBuilder(self.config.tls_preset).build()
        context = base.context
        context.sni_callback = self._sni_callback
        return context

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self, app, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """
        Serve until shutdown, a listener failure, or cancellation.

        Args:
            app: ASGI application receiving every HTTPS request
            shutdown_event: Optional event that triggers graceful shutdown

        Raises:
            ServerAlreadyRunningError: run() is already active on this instance.
            HTTPServerError: The port-80 listener failed.
            HTTPSServerError: The port-443 listener failed.
            ShutdownError: Listeners did not drain in time.
        """
        with self._lock:
            if self._running:
                raise ServerAlreadyRunningError()
            tls_context = self.build_tls_context()
            config = self.config
            common = dict(
                read_timeout=config.read_timeout,
                write_timeout=config.write_timeout,
                idle_timeout=config.idle_timeout,
                max_header_bytes=config.max_header_bytes,
            )
            listeners = [
                Listener(
                    "HTTP", self.http_app, self._http_host, self._http_port,
                    error_class=HTTPServerError, **common,
                ),
                Listener(
                    "HTTPS", app, self._https_host, self._https_port,
                    ssl_context=tls_context, error_class=HTTPSServerError, **common,
                ),
            ]
            self._listeners = listeners
            self._running = True

        logger.info(
            "[AUTOCERT] Starting server (http=%s, https=%s)",
            config.http_addr, config.https_addr,
        )
        waiters = {listener.start() for listener in listeners}
        stop_waiter = None
        if shutdown_event is not None:
            stop_waiter = asyncio.create_task(shutdown_event.wait(), name="autocert-shutdown-event")
            waiters.add(stop_waiter)

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            logger.info("[AUTOCERT] Run cancelled, shutting down")
            await self.shutdown()
            raise
        finally:
            if stop_waiter is not None:
                stop_waiter.cancel()

        failure = None
        for listener in listeners:
            task = listener.task
            if task in done and not task.cancelled() and task.exception() is not None:
                failure = task.exception()
                break

        if failure is not None:
            logger.error("[AUTOCERT] %s; stopping remaining listener", failure)
            try:
                await self.shutdown()
            except ShutdownError as e:
                logger.error("[AUTOCERT] Shutdown after listener failure incomplete: %s", e)
            raise failure

        await self.shutdown()

    async def shutdown(self) -> None:
        """
        Stop both listeners, waiting up to shutdown_timeout for each to drain.

        A no-op when the server is not running.

        Raises:
            ShutdownError: A listener had to be closed forcibly.
        """
        async with self._shutdown_lock:
            with self._lock:
                if not self._running:
                    return
                listeners = list(self._listeners)
                timeout = self.config.shutdown_timeout or None

            logger.info("[AUTOCERT] Shutting down listeners")
            try:
                results = await asyncio.gather(
                    *(listener.stop(timeout) for listener in listeners),
                    return_exceptions=True,
                )
            finally:
                with self._lock:
                    self._running = False
                    self._listeners = []

        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            raise ShutdownError("; ".join(str(error) for error in errors))
        logger.info("[AUTOCERT] Server stopped")
