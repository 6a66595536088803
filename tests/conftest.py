"""
Shared fixtures for autocert tests.
"""
import datetime
import socket
import ssl

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from autocert.domains import MemoryDomainStore
from autocert.settings import clear_settings_cache
from autocert.storage import CertificatePaths, save_artifacts


def _self_signed(domains, days=30):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


@pytest.fixture
def self_signed():
    """Factory: self_signed(["a.example.com", ...], days=30) -> (cert_pem, key_pem)."""
    return _self_signed


@pytest.fixture
def cert_dir(tmp_path):
    path = tmp_path / "certs"
    path.mkdir()
    return path


@pytest.fixture
def install_certificate(cert_dir):
    """Factory writing a self-signed certificate for a domain into cert_dir."""

    def install(domain, days=30, alt_names=()):
        cert_pem, key_pem = _self_signed([domain, *alt_names], days=days)
        paths = CertificatePaths.for_domain(cert_dir, domain)
        save_artifacts(paths, private_key=key_pem, certificate=cert_pem)
        return paths, cert_pem

    return install


@pytest.fixture
def domain_store():
    return MemoryDomainStore()


@pytest.fixture
def occupied_port():
    """A localhost port with a live listener on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def client_tls_context():
    """Client context that accepts any server certificate."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()
