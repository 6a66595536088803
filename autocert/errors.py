"""
Exception hierarchy for certificate provisioning and serving.

Every error raised by the package derives from AutoCertError. Configuration
problems additionally derive from ValueError so callers validating input can
catch them generically.
"""
from typing import Optional


class AutoCertError(Exception):
    """Base class for all autocert errors."""


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(AutoCertError, ValueError):
    """Invalid configuration detected at construction time."""


class NoCertManagerError(ConfigurationError):
    def __init__(self):
        super().__init__("certificate manager is required")


class NoDomainStoreError(ConfigurationError):
    def __init__(self):
        super().__init__("domain store is required")


class InvalidAddressError(ConfigurationError):
    """A listen or bind address is not in host:port form."""


class GeneratorConfigError(ConfigurationError):
    """Generator options failed validation."""


class TLSConfigError(ConfigurationError):
    """A TLS profile option was rejected."""


class EmptyCertPathError(TLSConfigError):
    def __init__(self):
        super().__init__("certificate or key file path cannot be empty")


class CertificateLoadError(TLSConfigError):
    def __init__(self, detail: str):
        super().__init__(f"failed to load certificate: {detail}")


class InvalidTLSVersionError(TLSConfigError):
    def __init__(self, version):
        super().__init__(f"invalid TLS version: {version!r}")


class TLSVersionMismatchError(TLSConfigError):
    def __init__(self, minimum, maximum):
        super().__init__(
            f"TLS version mismatch: minimum {minimum.name} is greater than maximum {maximum.name}"
        )


class InvalidClientAuthError(TLSConfigError):
    def __init__(self, value):
        super().__init__(f"invalid client auth type: {value!r}")


class EmptyServerNameError(TLSConfigError):
    def __init__(self):
        super().__init__("server name cannot be empty")


# =============================================================================
# Handshake-time resolution
# =============================================================================


class NoServerNameError(AutoCertError):
    def __init__(self):
        super().__init__("no server name provided")


class DomainNotRegisteredError(AutoCertError):
    def __init__(self, domain: str):
        super().__init__(f"domain not registered: {domain}")
        self.domain = domain


class DomainLookupError(AutoCertError):
    def __init__(self, domain: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"domain lookup failed for {domain}{detail}")
        self.domain = domain


class InvalidDomainError(AutoCertError):
    def __init__(self):
        super().__init__("invalid domain: empty name")


class CertificateNotFoundError(AutoCertError):
    def __init__(self, domain: str):
        super().__init__(f"certificate not found for {domain}")
        self.domain = domain


# =============================================================================
# Server lifecycle
# =============================================================================


class ServerAlreadyRunningError(AutoCertError):
    def __init__(self):
        super().__init__("server is already running")


class ListenerError(AutoCertError):
    """A listener failed to bind or stopped unexpectedly."""


class HTTPServerError(ListenerError):
    """The plain HTTP listener failed."""


class HTTPSServerError(ListenerError):
    """The TLS listener failed."""


class ShutdownError(AutoCertError):
    """One or both listeners did not drain within the shutdown timeout."""


# =============================================================================
# ACME
# =============================================================================


class ACMEError(AutoCertError):
    """
    A request to the ACME server failed.

    Carries the RFC 7807 problem document fields when the server sent one.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        problem_type: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.problem_type = problem_type
        self.detail = detail


class RegistrationError(ACMEError):
    """The ACME account could not be registered."""


class ObtainError(ACMEError):
    """The certificate order could not be completed."""


class ChallengeValidationError(ObtainError):
    """The CA rejected an HTTP-01 challenge."""


class MalformedResponseError(ACMEError):
    """The CA returned an unusable payload."""


class ArtifactWriteError(AutoCertError):
    """Certificate artifacts could not be written to disk."""
