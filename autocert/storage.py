"""
Certificate artifact storage and inspection.

Artifacts for a certificate live side by side in one directory, named after
a filesystem-safe slug of the primary domain:

    <slug>.crt          certificate (full chain when bundled)
    <slug>.key          private key, mode 0600
    <slug>-issuer.crt   issuer chain, only when the CA returned one
"""
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID

from .errors import ArtifactWriteError


logger = logging.getLogger(__name__)

DIRECTORY_MODE = 0o755
PRIVATE_KEY_MODE = 0o600
CERTIFICATE_MODE = 0o644

_UNSAFE_SEGMENT = re.compile(r"[^a-z0-9._-]")


def safe_file_segment(value: str) -> str:
    """
    Turn a domain into a safe file name stem.

    Lowercases, keeps [a-z0-9._-], replaces anything else with "_", strips
    leading and trailing separators, and falls back to "certificate".
    """
    slug = _UNSAFE_SEGMENT.sub("_", value.strip().lower()).strip("._-")
    return slug or "certificate"


@dataclass(frozen=True)
class CertificatePaths:
    """On-disk locations of one certificate's artifacts."""

    certificate: Path
    private_key: Path
    issuer: Path

    @classmethod
    def for_domain(cls, directory: Union[str, os.PathLike], domain: str) -> "CertificatePaths":
        base = Path(directory).absolute()
        slug = safe_file_segment(domain)
        return cls(
            certificate=base / f"{slug}.crt",
            private_key=base / f"{slug}.key",
            issuer=base / f"{slug}-issuer.crt",
        )

    def exists(self) -> bool:
        return self.certificate.is_file() and self.private_key.is_file()


def write_file(path: Path, data: bytes, mode: int) -> None:
    """Write bytes with the given permissions, applied before any data lands."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "wb", closefd=False) as handle:
            handle.write(data)
    finally:
        os.close(fd)


def save_artifacts(
    paths: CertificatePaths,
    private_key: bytes,
    certificate: bytes,
    issuer_certificate: Optional[bytes] = None,
) -> None:
    """
    Persist key, certificate and optional issuer chain.

    The key is written first. A failure part way leaves whatever was already
    written in place.

    Raises:
        ArtifactWriteError: Directory creation or a write failed.
    """
    try:
        paths.certificate.parent.mkdir(mode=DIRECTORY_MODE, parents=True, exist_ok=True)
        write_file(paths.private_key, private_key, PRIVATE_KEY_MODE)
        write_file(paths.certificate, certificate, CERTIFICATE_MODE)
        if issuer_certificate:
            write_file(paths.issuer, issuer_certificate, CERTIFICATE_MODE)
    except OSError as e:
        raise ArtifactWriteError(f"failed to write certificate artifacts: {e}") from e

    logger.info("[TLS-STORAGE] Certificate saved to %s", paths.certificate)


def delete_artifacts(paths: CertificatePaths) -> bool:
    """Remove every artifact that exists. Returns True if anything was removed."""
    removed = False
    for path in (paths.certificate, paths.private_key, paths.issuer):
        try:
            path.unlink()
            removed = True
            logger.info("[TLS-STORAGE] Deleted %s", path)
        except FileNotFoundError:
            continue
    return removed


@dataclass
class CertificateInfo:
    """Information extracted from a certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    domains: list[str] = field(default_factory=list)

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        """Get days until certificate expires."""
        now = now or datetime.now(timezone.utc)
        return max(0, (self.not_after - now).days)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.not_after


def _common_name(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else ""


def parse_certificate(cert_pem: bytes) -> CertificateInfo:
    """
    Parse the first certificate of a PEM bundle.

    Raises:
        ValueError: The data is not a PEM certificate.
    """
    cert = x509.load_pem_x509_certificate(cert_pem)

    subject_cn = _common_name(cert.subject)
    domains = [subject_cn] if subject_cn else []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        for name in san_ext.value.get_values_for_type(x509.DNSName):
            if name not in domains:
                domains.append(name)
    except x509.ExtensionNotFound:
        logger.debug("[TLS-STORAGE] Certificate for %r has no SAN extension", subject_cn)

    return CertificateInfo(
        subject=subject_cn,
        issuer=_common_name(cert.issuer),
        serial_number=format(cert.serial_number, "x"),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        domains=domains,
    )
