"""
Hardened TLS configuration built from named presets.

A TLSConfigBuilder starts from a preset and records options in order. Nothing
is applied until build(), which creates a fresh SSLContext, applies and
validates every option, and either returns a complete TLSConfig or raises.
No partially configured context ever escapes a failed build.
"""
import logging
import os
import ssl
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from .errors import (
    CertificateLoadError,
    EmptyCertPathError,
    EmptyServerNameError,
    InvalidClientAuthError,
    InvalidTLSVersionError,
    TLSVersionMismatchError,
)


logger = logging.getLogger(__name__)


class TLSPreset(str, Enum):
    """Named TLS profiles."""

    DEFAULT = "default"
    MODERN = "modern"
    INTERMEDIATE = "intermediate"
    STRICT = "strict"


class ClientAuth(str, Enum):
    """Client certificate policies for server-side contexts."""

    NO_CLIENT_CERT = "no_client_cert"
    REQUEST_CLIENT_CERT = "request_client_cert"
    REQUIRE_ANY_CLIENT_CERT = "require_any_client_cert"
    VERIFY_CLIENT_CERT_IF_GIVEN = "verify_client_cert_if_given"
    REQUIRE_AND_VERIFY_CLIENT_CERT = "require_and_verify_client_cert"


# OpenSSL cannot request a certificate without verifying it, so the
# "request" and "require any" modes collapse onto their verifying siblings.
_CLIENT_AUTH_MODES = {
    ClientAuth.NO_CLIENT_CERT: ssl.CERT_NONE,
    ClientAuth.REQUEST_CLIENT_CERT: ssl.CERT_OPTIONAL,
    ClientAuth.REQUIRE_ANY_CLIENT_CERT: ssl.CERT_REQUIRED,
    ClientAuth.VERIFY_CLIENT_CERT_IF_GIVEN: ssl.CERT_OPTIONAL,
    ClientAuth.REQUIRE_AND_VERIFY_CLIENT_CERT: ssl.CERT_REQUIRED,
}

_SUPPORTED_VERSIONS = (
    ssl.TLSVersion.TLSv1,
    ssl.TLSVersion.TLSv1_1,
    ssl.TLSVersion.TLSv1_2,
    ssl.TLSVersion.TLSv1_3,
)

_VERSION_NAMES = {
    "1.0": ssl.TLSVersion.TLSv1,
    "1.1": ssl.TLSVersion.TLSv1_1,
    "1.2": ssl.TLSVersion.TLSv1_2,
    "1.3": ssl.TLSVersion.TLSv1_3,
    "tlsv1": ssl.TLSVersion.TLSv1,
    "tlsv1.0": ssl.TLSVersion.TLSv1,
    "tlsv1.1": ssl.TLSVersion.TLSv1_1,
    "tlsv1.2": ssl.TLSVersion.TLSv1_2,
    "tlsv1.3": ssl.TLSVersion.TLSv1_3,
}

# TLS 1.2 suites; TLS 1.3 suites are fixed by OpenSSL and always AEAD.
_FORWARD_SECRET_AEAD = ":".join([
    "ECDHE-ECDSA-AES256-GCM-SHA384",
    "ECDHE-RSA-AES256-GCM-SHA384",
    "ECDHE-ECDSA-CHACHA20-POLY1305",
    "ECDHE-RSA-CHACHA20-POLY1305",
    "ECDHE-ECDSA-AES128-GCM-SHA256",
    "ECDHE-RSA-AES128-GCM-SHA256",
])

_INTERMEDIATE_CIPHERS = ":".join([
    _FORWARD_SECRET_AEAD,
    "DHE-RSA-AES128-GCM-SHA256",
    "DHE-RSA-AES256-GCM-SHA384",
    "DHE-RSA-CHACHA20-POLY1305",
])


@dataclass(frozen=True)
class PresetProfile:
    """Static description of a preset."""

    min_version: ssl.TLSVersion
    ciphers: Optional[str]
    curves: tuple[str, ...]
    session_tickets: bool = True
    renegotiation: bool = True


PRESETS: dict[TLSPreset, PresetProfile] = {
    TLSPreset.DEFAULT: PresetProfile(
        min_version=ssl.TLSVersion.TLSv1_2,
        ciphers=_FORWARD_SECRET_AEAD,
        curves=("X25519", "P-256"),
    ),
    TLSPreset.MODERN: PresetProfile(
        min_version=ssl.TLSVersion.TLSv1_3,
        ciphers=None,
        curves=("X25519", "P-256"),
    ),
    TLSPreset.INTERMEDIATE: PresetProfile(
        min_version=ssl.TLSVersion.TLSv1_2,
        ciphers=_INTERMEDIATE_CIPHERS,
        curves=("X25519", "P-256", "P-384"),
    ),
    TLSPreset.STRICT: PresetProfile(
        min_version=ssl.TLSVersion.TLSv1_3,
        ciphers=None,
        curves=("X25519", "P-256"),
        session_tickets=False,
        renegotiation=False,
    ),
}


@dataclass(frozen=True)
class TLSConfig:
    """
    A fully built TLS configuration.

    The curve list records the preset's group preference. The stdlib ssl
    module does not expose an ordered group list, so OpenSSL's defaults
    (which lead with X25519 and P-256) are what is negotiated.
    """

    context: ssl.SSLContext
    preset: TLSPreset
    min_version: ssl.TLSVersion
    max_version: Optional[ssl.TLSVersion]
    curves: tuple[str, ...]
    client_auth: ClientAuth
    server_name: Optional[str] = None
    certificate_file: Optional[str] = None
    insecure_skip_verify: bool = False


class _Draft:
    """Mutable state threaded through options during a single build()."""

    def __init__(self, preset: TLSPreset, server_side: bool):
        profile = PRESETS[preset]
        protocol = ssl.PROTOCOL_TLS_SERVER if server_side else ssl.PROTOCOL_TLS_CLIENT
        self.context = ssl.SSLContext(protocol)
        self.context.minimum_version = profile.min_version
        if profile.ciphers:
            self.context.set_ciphers(profile.ciphers)
        if not profile.session_tickets:
            self.context.options |= ssl.OP_NO_TICKET
        if not profile.renegotiation:
            self.context.options |= ssl.OP_NO_RENEGOTIATION
        self.context.options |= ssl.OP_NO_COMPRESSION
        if server_side:
            self.context.options |= ssl.OP_CIPHER_SERVER_PREFERENCE
        else:
            self.context.load_default_certs(ssl.Purpose.SERVER_AUTH)

        self.server_side = server_side
        self.preset = preset
        self.min_version = profile.min_version
        self.max_version: Optional[ssl.TLSVersion] = None
        self.curves = profile.curves
        self.client_auth = ClientAuth.NO_CLIENT_CERT
        self.server_name: Optional[str] = None
        self.certificate_file: Optional[str] = None
        self.insecure_skip_verify = False


TLSOption = Callable[[_Draft], None]
VersionLike = Union[ssl.TLSVersion, str]


def parse_tls_version(value: VersionLike) -> ssl.TLSVersion:
    """
    Normalize a TLS version.

    Accepts ssl.TLSVersion members (TLS 1.0 to 1.3) or strings such as
    "1.2" and "TLSv1.3".

    Raises:
        InvalidTLSVersionError: Anything else, including SSL 3.0.
    """
    if isinstance(value, ssl.TLSVersion):
        if value in _SUPPORTED_VERSIONS:
            return value
        raise InvalidTLSVersionError(value)
    if isinstance(value, str):
        version = _VERSION_NAMES.get(value.strip().lower().replace("_", "."))
        if version is not None:
            return version
    raise InvalidTLSVersionError(value)


def with_certificate(cert_file: Union[str, os.PathLike], key_file: Union[str, os.PathLike]) -> TLSOption:
    """Load a certificate chain and its private key."""

    def apply(draft: _Draft) -> None:
        cert_path = os.fspath(cert_file) if cert_file else ""
        key_path = os.fspath(key_file) if key_file else ""
        if not cert_path or not key_path:
            raise EmptyCertPathError()
        try:
            draft.context.load_cert_chain(certfile=cert_path, keyfile=key_path)
        except (OSError, ssl.SSLError) as e:
            raise CertificateLoadError(str(e)) from e
        draft.certificate_file = cert_path

    return apply


def with_client_auth(mode: Union[ClientAuth, str]) -> TLSOption:
    """Set the client certificate policy."""

    def apply(draft: _Draft) -> None:
        try:
            auth = ClientAuth(mode)
        except ValueError:
            raise InvalidClientAuthError(mode) from None
        draft.context.verify_mode = _CLIENT_AUTH_MODES[auth]
        draft.client_auth = auth

    return apply


def with_min_version(version: VersionLike) -> TLSOption:
    """Set the lowest protocol version accepted."""

    def apply(draft: _Draft) -> None:
        parsed = parse_tls_version(version)
        if draft.max_version is not None and parsed > draft.max_version:
            raise TLSVersionMismatchError(parsed, draft.max_version)
        draft.context.minimum_version = parsed
        draft.min_version = parsed

    return apply


def with_max_version(version: VersionLike) -> TLSOption:
    """Set the highest protocol version accepted."""

    def apply(draft: _Draft) -> None:
        parsed = parse_tls_version(version)
        # The preset floor counts as a minimum too.
        if parsed < draft.min_version:
            raise TLSVersionMismatchError(draft.min_version, parsed)
        draft.context.maximum_version = parsed
        draft.max_version = parsed

    return apply


def with_server_name(name: str) -> TLSOption:
    """Set the name expected from the peer (client contexts) or advertised by it."""

    def apply(draft: _Draft) -> None:
        if not name or not name.strip():
            raise EmptyServerNameError()
        draft.server_name = name.strip().lower()

    return apply


def with_insecure_skip_verify() -> TLSOption:
    """Disable peer verification. For tests only."""

    def apply(draft: _Draft) -> None:
        logger.warning("[TLS-CONFIG] Peer certificate verification disabled")
        if not draft.server_side:
            draft.context.check_hostname = False
        draft.context.verify_mode = ssl.CERT_NONE
        draft.insecure_skip_verify = True

    return apply


class TLSConfigBuilder:
    """
    Collects TLS options and builds a validated configuration.

    Example:
        config = (
            TLSConfigBuilder(TLSPreset.INTERMEDIATE)
            .certificate("site.crt", "site.key")
            .min_version("1.2")
            .build()
        )
    """

    def __init__(self, preset: Union[TLSPreset, str] = TLSPreset.DEFAULT, server_side: bool = True):
        self._preset = TLSPreset(preset)
        self._server_side = server_side
        self._options: list[TLSOption] = []

    def option(self, option: TLSOption) -> "TLSConfigBuilder":
        self._options.append(option)
        return self

    def certificate(self, cert_file, key_file) -> "TLSConfigBuilder":
        return self.option(with_certificate(cert_file, key_file))

    def client_auth(self, mode: Union[ClientAuth, str]) -> "TLSConfigBuilder":
        return self.option(with_client_auth(mode))

    def min_version(self, version: VersionLike) -> "TLSConfigBuilder":
        return self.option(with_min_version(version))

    def max_version(self, version: VersionLike) -> "TLSConfigBuilder":
        return self.option(with_max_version(version))

    def server_name(self, name: str) -> "TLSConfigBuilder":
        return self.option(with_server_name(name))

    def insecure_skip_verify(self) -> "TLSConfigBuilder":
        return self.option(with_insecure_skip_verify())

    def build(self) -> TLSConfig:
        """
        Apply every option to a fresh context.

        Raises:
            TLSConfigError: The first option that failed validation.
        """
        draft = _Draft(self._preset, self._server_side)
        for apply in self._options:
            apply(draft)
        logger.debug(
            "[TLS-CONFIG] Built %s profile (min=%s, max=%s, client_auth=%s)",
            draft.preset.value,
            draft.min_version.name,
            draft.max_version.name if draft.max_version else "-",
            draft.client_auth.value,
        )
        return TLSConfig(
            context=draft.context,
            preset=draft.preset,
            min_version=draft.min_version,
            max_version=draft.max_version,
            curves=draft.curves,
            client_auth=draft.client_auth,
            server_name=draft.server_name,
            certificate_file=draft.certificate_file,
            insecure_skip_verify=draft.insecure_skip_verify,
        )


def new_tls_config(*options: TLSOption, preset: Union[TLSPreset, str] = TLSPreset.DEFAULT) -> TLSConfig:
    """Build a server-side configuration from a preset and a list of options."""
    builder = TLSConfigBuilder(preset)
    for option in options:
        builder.option(option)
    return builder.build()


def default_tls_config() -> TLSConfig:
    return TLSConfigBuilder(TLSPreset.DEFAULT).build()


def modern_tls_config() -> TLSConfig:
    return TLSConfigBuilder(TLSPreset.MODERN).build()


def intermediate_tls_config() -> TLSConfig:
    return TLSConfigBuilder(TLSPreset.INTERMEDIATE).build()


def strict_tls_config() -> TLSConfig:
    return TLSConfigBuilder(TLSPreset.STRICT).build()
