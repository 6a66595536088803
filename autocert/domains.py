"""
Domain registration records and the store contract used to resolve them.

The server only ever reads these records. Status transitions
(provisioning -> active, provisioning -> failed, failed -> provisioning) are
driven by whatever owns the store.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


logger = logging.getLogger(__name__)


class DomainStatus(str, Enum):
    """Provisioning status of a registered domain."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass(frozen=True)
class DomainInfo:
    """A registered domain and its provisioning state."""

    domain: str
    tenant_id: str = ""
    status: DomainStatus = DomainStatus.PROVISIONING
    error: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DomainStore(ABC):
    """
    Resolves hostnames to their registration records.

    Implementations are called from the port-80 request path and from the TLS
    handshake. Handshake lookups run on a worker thread with its own event
    loop, so implementations must not hold resources bound to one loop.
    """

    @abstractmethod
    async def get_domain(self, domain: str) -> Optional[DomainInfo]:
        """
        Look up a domain.

        Args:
            domain: Lowercase hostname without port

        Returns:
            The record, or None when the domain is not registered.

        Raises:
            Exception: The lookup itself failed.
        """
        pass


class MemoryDomainStore(DomainStore):
    """Thread-safe in-memory store, used by the CLI and in tests."""

    def __init__(self, domains: Optional[list[DomainInfo]] = None):
        self._lock = threading.Lock()
        self._domains: dict[str, DomainInfo] = {}
        for info in domains or []:
            self._domains[info.domain.lower()] = info

    async def get_domain(self, domain: str) -> Optional[DomainInfo]:
        with self._lock:
            return self._domains.get(domain.lower())

    def register(
        self,
        domain: str,
        tenant_id: str = "",
        status: DomainStatus = DomainStatus.PROVISIONING,
    ) -> DomainInfo:
        """Register a domain, replacing any existing record."""
        info = DomainInfo(domain=domain.lower(), tenant_id=tenant_id, status=status)
        with self._lock:
            self._domains[info.domain] = info
        logger.info("[DOMAINS] Registered %s (tenant=%r, status=%s)", info.domain, tenant_id, status.value)
        return info

    def set_status(self, domain: str, status: DomainStatus, error: str = "") -> DomainInfo:
        """
        Move a domain to a new status.

        The error text is kept only for the failed status.

        Raises:
            KeyError: The domain is not registered.
        """
        key = domain.lower()
        with self._lock:
            current = self._domains[key]
            updated = replace(
                current,
                status=status,
                error=error if status == DomainStatus.FAILED else "",
            )
            self._domains[key] = updated
        logger.info("[DOMAINS] %s: %s -> %s", key, current.status.value, status.value)
        return updated

    def remove(self, domain: str) -> bool:
        """Forget a domain. Returns True if it was registered."""
        with self._lock:
            return self._domains.pop(domain.lower(), None) is not None

    def list_domains(self) -> list[DomainInfo]:
        with self._lock:
            return sorted(self._domains.values(), key=lambda info: info.domain)
