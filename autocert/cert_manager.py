"""
Certificate manager contract and the file-backed reference implementation.

A certificate manager bridges generator output to the running server.
get_certificate only reads what is already on disk, so a missing certificate
simply fails the handshake. Issuance happens only when generate() or renew()
is called explicitly.
"""
import asyncio
import errno
import logging
import os
import ssl
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

import httpx
from fastapi import Request, Response
from fastapi.responses import PlainTextResponse

from .acme_client import LETSENCRYPT_PRODUCTION, KeyType
from .challenges import CHALLENGE_PATH_PREFIX, ChallengeStore, HTTP01Provider
from .errors import ACMEError, AutoCertError, CertificateNotFoundError, InvalidDomainError
from .generator import GenerateResult, Generator, GeneratorConfig, load_generator_config
from .storage import CertificatePaths, delete_artifacts, parse_certificate
from .tls_config import TLSConfigBuilder, TLSPreset


logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF = 5.0

_RETRYABLE_STATUS_CODES = {429, 503}
_RETRYABLE_ERRNOS = {errno.ECONNREFUSED, errno.ENETUNREACH, errno.ETIMEDOUT, errno.ECONNRESET}
_RETRYABLE_PATTERNS = (
    "connection refused",
    "network is unreachable",
    "no such host",
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "service unavailable",
    "temporary failure",
    "connection reset",
)


def is_retryable_error(exc: Optional[BaseException]) -> bool:
    """
    Tell whether an issuance failure is transient.

    Network timeouts and connection failures, ACME 429/503 responses and
    messages naming a rate limit or temporary failure are retryable. The
    whole __cause__ chain is inspected.
    """
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError)):
            return True
        if isinstance(exc, ACMEError) and exc.status_code in _RETRYABLE_STATUS_CODES:
            return True
        if isinstance(exc, OSError) and exc.errno in _RETRYABLE_ERRNOS:
            return True
        message = str(exc).lower()
        if any(pattern in message for pattern in _RETRYABLE_PATTERNS):
            return True
        exc = exc.__cause__ or exc.__context__
    return False


@dataclass(frozen=True)
class ClientHello:
    """What the TLS handshake tells us about the requested name."""

    server_name: str


class CertificateManager(ABC):
    """Capabilities the AutoCert server needs from certificate storage."""

    @abstractmethod
    def get_certificate(self, hello: ClientHello) -> ssl.SSLContext:
        """
        Return a server context holding the certificate for hello.server_name.

        Called synchronously from the TLS handshake, so it must be fast and
        must never start issuance.

        Raises:
            AutoCertError: No certificate is available.
        """
        pass

    @abstractmethod
    async def handle_challenge(self, request: Request) -> Optional[Response]:
        """
        Answer an ACME HTTP-01 challenge request.

        Returns:
            The response to send, or None if the request is not a challenge.
        """
        pass

    @abstractmethod
    def exists(self, domain: str) -> bool:
        """Cheap check used to decide whether to redirect to HTTPS."""
        pass


@dataclass
class _CachedContext:
    stamp: tuple[int, int]
    context: ssl.SSLContext


@dataclass
class _IndexedNames:
    mtime_ns: int
    names: frozenset[str]


GeneratorFactory = Callable[[GeneratorConfig, HTTP01Provider], Generator]


def default_generator_factory(config: GeneratorConfig, provider: HTTP01Provider) -> Generator:
    return Generator(config, http01_provider=provider)


def _normalize(domain: str) -> str:
    return domain.strip().lower().rstrip(".")


class FileCertificateManager(CertificateManager):
    """
    Serves certificates written by the generator into one directory.

    Artifacts are named after the first domain of their certificate. Other
    names on the certificate are found through an index of subject
    alternative names, rebuilt per file whenever it changes on disk.

    Contexts are built on first use and reused until the certificate or key
    file changes. Challenges are answered from a ChallengeStore, which is
    also the http-01 provider for generate() and renew().
    """

    def __init__(
        self,
        cert_dir: Union[str, os.PathLike],
        preset: Union[TLSPreset, str] = TLSPreset.DEFAULT,
        challenges: Optional[ChallengeStore] = None,
        email: str = "",
        ca_directory_url: str = LETSENCRYPT_PRODUCTION,
        key_type: Union[KeyType, str] = KeyType.RSA2048,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        generator_factory: GeneratorFactory = default_generator_factory,
    ):
        """
        Args:
            cert_dir: Directory holding the generator's artifacts
            preset: TLS profile for the per-domain contexts
            challenges: Shared token store; a private in-memory one if omitted
            email: ACME contact, required only for generate() and renew()
            ca_directory_url: ACME directory used by generate()
            key_type: Certificate key algorithm used by generate()
            max_retries: Attempts per generate() call, at least 1
            retry_backoff: Seconds before the first retry, doubled each time
            generator_factory: Builds the Generator for one issuance
        """
        if not os.fspath(cert_dir):
            raise ValueError("certificate directory is required")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if retry_backoff < 0:
            raise ValueError("retry_backoff must not be negative")
        self._cert_dir = Path(cert_dir).absolute()
        self._preset = TLSPreset(preset)
        self.challenges = challenges if challenges is not None else ChallengeStore()
        self.email = email
        self.ca_directory_url = ca_directory_url
        self.key_type = KeyType(key_type)
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._generator_factory = generator_factory
        self._lock = threading.Lock()
        self._contexts: dict[Path, _CachedContext] = {}
        self._names: dict[Path, _IndexedNames] = {}

    @property
    def cert_dir(self) -> Path:
        return self._cert_dir

    def paths(self, domain: str) -> CertificatePaths:
        return CertificatePaths.for_domain(self._cert_dir, domain)

    # =========================================================================
    # Lookup
    # =========================================================================

    def _certificate_files(self) -> list[Path]:
        if not self._cert_dir.is_dir():
            return []
        files = []
        for cert_file in sorted(self._cert_dir.glob("*.crt")):
            if cert_file.stem.endswith("-issuer"):
                continue
            if cert_file.with_suffix(".key").is_file():
                files.append(cert_file)
        return files

    def _names_on(self, cert_file: Path) -> frozenset[str]:
        try:
            mtime_ns = cert_file.stat().st_mtime_ns
        except FileNotFoundError:
            return frozenset()

        with self._lock:
            cached = self._names.get(cert_file)
            if cached is not None and cached.mtime_ns == mtime_ns:
                return cached.names

        try:
            info = parse_certificate(cert_file.read_bytes())
        except (OSError, ValueError) as e:
            logger.warning("[CERT-MANAGER] Skipping unreadable certificate %s: %s", cert_file, e)
            names = frozenset()
        else:
            names = frozenset(_normalize(name) for name in info.domains)

        with self._lock:
            self._names[cert_file] = _IndexedNames(mtime_ns=mtime_ns, names=names)
        return names

    def resolve(self, domain: str) -> Optional[CertificatePaths]:
        """
        Find the artifacts whose certificate covers domain.

        The file named after the domain wins; otherwise every certificate in
        the directory is checked for the name among its SANs.
        """
        domain = _normalize(domain)
        if not domain:
            return None

        direct = self.paths(domain)
        if direct.exists():
            return direct

        for cert_file in self._certificate_files():
            if domain in self._names_on(cert_file):
                return self.paths(cert_file.stem)
        return None

    def exists(self, domain: str) -> bool:
        return self.resolve(domain) is not None

    def get_certificate(self, hello: ClientHello) -> ssl.SSLContext:
        domain = _normalize(hello.server_name)
        if not domain:
            raise InvalidDomainError()

        paths = self.resolve(domain)
        if paths is None:
            raise CertificateNotFoundError(domain)
        try:
            stamp = (
                paths.certificate.stat().st_mtime_ns,
                paths.private_key.stat().st_mtime_ns,
            )
        except FileNotFoundError:
            raise CertificateNotFoundError(domain) from None

        with self._lock:
            cached = self._contexts.get(paths.certificate)
            if cached is not None and cached.stamp == stamp:
                return cached.context

        context = (
            TLSConfigBuilder(self._preset)
            .certificate(paths.certificate, paths.private_key)
            .build()
            .context
        )
        with self._lock:
            self._contexts[paths.certificate] = _CachedContext(stamp=stamp, context=context)
        logger.info("[CERT-MANAGER] Loaded certificate for %s from %s", domain, paths.certificate)
        return context

    async def handle_challenge(self, request: Request) -> Optional[Response]:
        path = request.url.path
        if not path.startswith(CHALLENGE_PATH_PREFIX):
            return None

        token = path[len(CHALLENGE_PATH_PREFIX):]
        key_authorization = self.challenges.get(token)
        if key_authorization is None:
            logger.warning("[CERT-MANAGER] Challenge not found for token: %s", token)
            return PlainTextResponse("challenge not found", status_code=404)

        logger.info("[CERT-MANAGER] Serving challenge response for token: %s", token)
        return PlainTextResponse(key_authorization)

    # =========================================================================
    # Issuance
    # =========================================================================

    def _generator_for(self, domain: str) -> Generator:
        config = load_generator_config(
            domains=[domain],
            email=self.email,
            output_dir=str(self._cert_dir),
            ca_directory_url=self.ca_directory_url,
            certificate_key_type=self.key_type,
        )
        return self._generator_factory(config, self.challenges)

    async def generate(self, domain: str) -> GenerateResult:
        """
        Issue a certificate for domain into the certificate directory.

        Transient failures (see is_retryable_error) are retried up to
        max_retries attempts in total, waiting retry_backoff seconds before
        the first retry and twice as long before each later one.

        Raises:
            InvalidDomainError: The domain is empty.
            GeneratorConfigError: No ACME email is configured.
            AutoCertError: The last attempt failed.
        """
        domain = _normalize(domain)
        if not domain:
            raise InvalidDomainError()
        generator = self._generator_for(domain)

        backoff = self.retry_backoff
        for attempt in range(1, self.max_retries + 1):
            try:
                result = await generator.generate()
            except AutoCertError as e:
                if attempt < self.max_retries and is_retryable_error(e):
                    logger.warning(
                        "[CERT-MANAGER] Attempt %d/%d for %s failed: %s; retrying in %ss",
                        attempt, self.max_retries, domain, e, backoff,
                    )
                    await asyncio.sleep(backoff)
                    backoff *= 2
                    continue
                logger.error("[CERT-MANAGER] Generation for %s failed after %d attempt(s): %s", domain, attempt, e)
                raise
            logger.info("[CERT-MANAGER] Certificate for %s issued", domain)
            return result

    async def renew(self, domain: str) -> GenerateResult:
        """
        Replace the certificate named after domain with a freshly issued one.

        The existing artifacts are deleted first, so a failed renewal leaves
        the domain without a certificate.
        """
        self.delete(domain)
        return await self.generate(domain)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def delete(self, domain: str) -> bool:
        """Remove the artifacts named after domain and forget their cached state."""
        paths = self.paths(_normalize(domain))
        with self._lock:
            self._contexts.pop(paths.certificate, None)
            self._names.pop(paths.certificate, None)
        return delete_artifacts(paths)

    def list_domains(self) -> list[str]:
        """Slugs of every complete certificate in the directory."""
        return [cert_file.stem for cert_file in self._certificate_files()]
