"""
autocert: automatic TLS certificates for multi-tenant HTTP services.

Two halves that share a certificate directory:

- Generator issues certificates through ACME HTTP-01 and writes them to disk;
- AutoCertServer serves port 80 (challenges, redirects, status pages) and
  port 443 (per-SNI certificates from a CertificateManager).
"""

__version__ = "0.1.0"

from .acme_client import (
    LETSENCRYPT_PRODUCTION,
    LETSENCRYPT_STAGING,
    ACMEClient,
    CertificateResource,
    KeyType,
)
from .cert_manager import CertificateManager, ClientHello, FileCertificateManager
from .challenges import ChallengeStore, HTTP01Provider, HTTPChallengeServer
from .domains import DomainInfo, DomainStatus, DomainStore, MemoryDomainStore
from .errors import AutoCertError, ConfigurationError
from .generator import GenerateResult, Generator, GeneratorConfig
from .server import AutoCertConfig, AutoCertServer
from .status_pages import StatusPageHandler, StatusPages
from .tls_config import (
    ClientAuth,
    TLSConfig,
    TLSConfigBuilder,
    TLSPreset,
    default_tls_config,
    intermediate_tls_config,
    modern_tls_config,
    new_tls_config,
    strict_tls_config,
)

__all__ = [
    "__version__",
    "LETSENCRYPT_PRODUCTION",
    "LETSENCRYPT_STAGING",
    "ACMEClient",
    "AutoCertConfig",
    "AutoCertError",
    "AutoCertServer",
    "CertificateManager",
    "CertificateResource",
    "ChallengeStore",
    "ClientAuth",
    "ClientHello",
    "ConfigurationError",
    "DomainInfo",
    "DomainStatus",
    "DomainStore",
    "FileCertificateManager",
    "GenerateResult",
    "Generator",
    "GeneratorConfig",
    "HTTP01Provider",
    "HTTPChallengeServer",
    "KeyType",
    "MemoryDomainStore",
    "StatusPageHandler",
    "StatusPages",
    "TLSConfig",
    "TLSConfigBuilder",
    "TLSPreset",
    "default_tls_config",
    "intermediate_tls_config",
    "modern_tls_config",
    "new_tls_config",
    "strict_tls_config",
]
