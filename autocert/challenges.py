"""
HTTP-01 challenge responders.

An HTTP01Provider is told by the ACME client when to publish a token and when
to withdraw it. Two providers ship here:

- HTTPChallengeServer: a standalone aiohttp server bound to the http-01
  address, for one-shot issuance when nothing else owns port 80.
- ChallengeStore: a token store (optionally directory backed) shared with a
  running AutoCert server, whose certificate manager answers the challenge
  requests on port 80 instead.
"""
import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from aiohttp import web

from .addresses import strip_port
from .errors import ObtainError


logger = logging.getLogger(__name__)

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def is_valid_token(token: str) -> bool:
    """ACME tokens are base64url without padding."""
    return bool(token) and _TOKEN_PATTERN.match(token) is not None


def canonical_header_name(name: str) -> str:
    """Canonicalize a header name, e.g. x-forwarded-host -> X-Forwarded-Host."""
    return "-".join(part.capitalize() for part in name.strip().split("-"))


class HTTP01Provider(ABC):
    """Publishes key authorizations for HTTP-01 validation."""

    @abstractmethod
    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        """Make the key authorization reachable at the well-known path."""
        pass

    @abstractmethod
    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        """Withdraw a token once its authorization has settled."""
        pass

    async def close(self) -> None:
        """Release any resources. Called once issuance has finished."""


class ChallengeStore(HTTP01Provider):
    """
    Token -> key authorization map.

    With a directory, tokens are stored as files so that a separate issuing
    process can hand them to a running server.
    """

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.directory = Path(directory) if directory else None
        self._lock = threading.Lock()
        self._tokens: dict[str, str] = {}

    def _token_path(self, token: str) -> Path:
        return self.directory / token

    def register(self, token: str, key_authorization: str) -> None:
        """
        Register an HTTP-01 challenge for serving.

        Raises:
            ValueError: The token contains characters outside base64url.
        """
        if not is_valid_token(token):
            raise ValueError(f"invalid challenge token: {token!r}")
        if self.directory is not None:
            self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            self._token_path(token).write_text(key_authorization)
        else:
            with self._lock:
                self._tokens[token] = key_authorization
        logger.info("[CHALLENGE] Registered HTTP-01 challenge: %s", token)

    def get(self, token: str) -> Optional[str]:
        """Get the key authorization for a token, or None if unknown."""
        if not is_valid_token(token):
            return None
        if self.directory is not None:
            try:
                return self._token_path(token).read_text()
            except FileNotFoundError:
                return None
        with self._lock:
            return self._tokens.get(token)

    def clear(self, token: str) -> None:
        if not is_valid_token(token):
            return
        if self.directory is not None:
            self._token_path(token).unlink(missing_ok=True)
        else:
            with self._lock:
                self._tokens.pop(token, None)
        logger.info("[CHALLENGE] Cleared HTTP-01 challenge: %s", token)

    def count(self) -> int:
        """Number of tokens currently published."""
        if self.directory is not None:
            if not self.directory.is_dir():
                return 0
            return sum(1 for path in self.directory.iterdir() if is_valid_token(path.name))
        with self._lock:
            return len(self._tokens)

    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        self.register(token, key_authorization)

    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        self.clear(token)


class HTTPChallengeServer(HTTP01Provider):
    """
    Standalone HTTP server for ACME HTTP-01 challenges.

    Started on the first present() and stopped once no tokens remain. When a
    proxy header is configured, the host is taken from that header instead of
    Host, so the server can sit behind another proxy.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 80, proxy_header: Optional[str] = None):
        """
        Initialize the challenge server.

        Args:
            host: Host to bind to; empty means all interfaces
            port: Port to bind to (usually 80 for HTTP-01)
            proxy_header: Header carrying the original Host, if proxied
        """
        self.host = host or "0.0.0.0"
        self.port = port
        self.proxy_header = canonical_header_name(proxy_header) if proxy_header else None
        self._challenges: dict[str, tuple[str, str]] = {}
        self._runner: Optional[web.AppRunner] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(CHALLENGE_PATH_PREFIX + "{token}", self._handle_challenge)
        return app

    async def start(self) -> None:
        """
        Start the HTTP challenge server.

        Raises:
            ObtainError: The address could not be bound.
        """
        if self._runner is not None:
            return
        runner = web.AppRunner(self.create_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            raise ObtainError(f"cannot bind http-01 responder on {self.host}:{self.port}: {e}") from e
        self._runner = runner
        logger.info("[CHALLENGE] HTTP challenge server started on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        """Stop the HTTP challenge server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("[CHALLENGE] HTTP challenge server stopped")

    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        self._challenges[token] = (domain.lower(), key_authorization)
        await self.start()

    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        self._challenges.pop(token, None)
        if not self._challenges:
            await self.stop()

    async def close(self) -> None:
        self._challenges.clear()
        await self.stop()

    def _request_host(self, request: web.Request) -> str:
        if self.proxy_header:
            forwarded = request.headers.get(self.proxy_header, "")
            if forwarded:
                return strip_port(forwarded.split(",")[0]).lower()
        return strip_port(request.host or "").lower()

    async def _handle_challenge(self, request: web.Request) -> web.Response:
        """Handle an ACME challenge request."""
        token = request.match_info["token"]
        entry = self._challenges.get(token)
        if entry is None:
            logger.warning("[CHALLENGE] Challenge not found for token: %s", token)
            raise web.HTTPNotFound()

        domain, key_authorization = entry
        host = self._request_host(request)
        if host != domain:
            logger.warning(
                "[CHALLENGE] Token %s requested for host %r but issued for %r; check the %s header",
                token, host, domain, self.proxy_header or "Host",
            )
            raise web.HTTPNotFound()

        logger.info("[CHALLENGE] Serving challenge response for %s", domain)
        return web.Response(text=key_authorization, content_type="text/plain")
