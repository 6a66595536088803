"""
One-shot certificate generation over ACME HTTP-01.

    generator = Generator(GeneratorConfig(
        domains=["shop.example.com"],
        email="ops@example.com",
        output_dir="/var/lib/autocert",
    ))
    result = await generator.generate()

Each call runs a full round trip with a fresh account key: register, order,
validate, finalize and write the artifacts. Nothing is resumed between calls;
a failed call should simply be retried.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .acme_client import (
    LETSENCRYPT_PRODUCTION,
    AccountKey,
    ACMEClient,
    KeyType,
    generate_account_key,
)
from .addresses import split_host_port
from .challenges import HTTP01Provider, HTTPChallengeServer, canonical_header_name
from .errors import GeneratorConfigError, InvalidAddressError, MalformedResponseError
from .storage import CertificatePaths, save_artifacts


logger = logging.getLogger(__name__)

DEFAULT_HTTP01_PORT = 80


class GeneratorConfig(BaseModel):
    """Options for a certificate generation run."""

    model_config = ConfigDict(frozen=True)

    domains: list[str]
    email: str
    output_dir: str

    # Let's Encrypt production unless overridden (e.g. LETSENCRYPT_STAGING)
    ca_directory_url: str = LETSENCRYPT_PRODUCTION

    # Where the standalone http-01 responder listens
    http01_address: str = f":{DEFAULT_HTTP01_PORT}"

    # Header consulted for host matching when fronted by another proxy
    http01_proxy_header: str = ""

    certificate_key_type: KeyType = KeyType.RSA2048
    bundle: bool = True

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one domain is required")
        cleaned = [domain.strip() for domain in v]
        if any(not domain for domain in cleaned):
            raise ValueError("domain entries cannot be empty")
        return cleaned

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("email is required")
        return v

    @field_validator("output_dir")
    @classmethod
    def validate_output_dir(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("output directory is required")
        return v

    @field_validator("http01_address")
    @classmethod
    def validate_http01_address(cls, v: str) -> str:
        if not v.strip():
            return f":{DEFAULT_HTTP01_PORT}"
        try:
            split_host_port(v)
        except InvalidAddressError as e:
            raise ValueError(f"invalid http-01 address {v!r}") from e
        return v.strip()

    @field_validator("http01_proxy_header")
    @classmethod
    def validate_proxy_header(cls, v: str) -> str:
        return canonical_header_name(v) if v.strip() else ""

    @field_validator("ca_directory_url")
    @classmethod
    def validate_ca_directory_url(cls, v: str) -> str:
        return v.strip() or LETSENCRYPT_PRODUCTION


@dataclass(frozen=True)
class GenerateResult:
    """Absolute paths of the written artifacts."""

    certificate_path: str
    private_key_path: str
    # Empty when the CA sent no issuer chain
    issuer_certificate_path: str = ""


ClientFactory = Callable[[GeneratorConfig, AccountKey], ACMEClient]
AccountKeyFactory = Callable[[], AccountKey]


def default_client_factory(config: GeneratorConfig, account_key: AccountKey) -> ACMEClient:
    return ACMEClient(
        directory_url=config.ca_directory_url,
        account_key=account_key,
        email=config.email,
        key_type=config.certificate_key_type,
    )


class Generator:
    """Runs ACME HTTP-01 issuance and persists the result."""

    def __init__(
        self,
        config: GeneratorConfig,
        http01_provider: Optional[HTTP01Provider] = None,
        client_factory: ClientFactory = default_client_factory,
        account_key_factory: AccountKeyFactory = generate_account_key,
    ):
        """
        Args:
            config: Validated generation options
            http01_provider: Responder to use instead of a standalone
                server on http01_address, e.g. a ChallengeStore shared
                with a running AutoCert server
            client_factory: Builds the ACME client
            account_key_factory: Builds the ephemeral account key
        """
        self.config = config
        self._provider = http01_provider
        self._client_factory = client_factory
        self._account_key_factory = account_key_factory

    @classmethod
    def from_options(cls, **options) -> "Generator":
        """
        Validate raw options and build a generator.

        Raises:
            GeneratorConfigError: The options are invalid.
        """
        provider = options.pop("http01_provider", None)
        client_factory = options.pop("client_factory", default_client_factory)
        account_key_factory = options.pop("account_key_factory", generate_account_key)
        return cls(
            load_generator_config(**options),
            http01_provider=provider,
            client_factory=client_factory,
            account_key_factory=account_key_factory,
        )

    @property
    def paths(self) -> CertificatePaths:
        return CertificatePaths.for_domain(self.config.output_dir, self.config.domains[0])

    def _default_provider(self) -> HTTPChallengeServer:
        host, port = split_host_port(self.config.http01_address)
        return HTTPChallengeServer(
            host=host,
            port=port,
            proxy_header=self.config.http01_proxy_header or None,
        )

    async def generate(self) -> GenerateResult:
        """
        Issue a certificate and write it to the output directory.

        Cancellation is honoured at every network step.

        Raises:
            RegistrationError: The account could not be registered.
            ObtainError: The order failed.
            MalformedResponseError: The CA returned an empty key or certificate.
            ArtifactWriteError: The files could not be written.
        """
        config = self.config
        domains = ", ".join(config.domains)
        logger.info("[GENERATOR] Generating certificate for %s via %s", domains, config.ca_directory_url)

        account_key = self._account_key_factory()
        provider = self._provider or self._default_provider()

        try:
            async with self._client_factory(config, account_key) as client:
                client.set_http01_provider(provider)
                await client.register(terms_of_service_agreed=True)
                resource = await client.obtain(list(config.domains), bundle=config.bundle)
        finally:
            await provider.close()

        if not resource.private_key:
            raise MalformedResponseError("empty private key received from ACME server")
        if not resource.certificate:
            raise MalformedResponseError("empty certificate payload received from ACME server")

        paths = self.paths
        save_artifacts(
            paths,
            private_key=resource.private_key,
            certificate=resource.certificate,
            issuer_certificate=resource.issuer_certificate or None,
        )

        result = GenerateResult(
            certificate_path=str(paths.certificate),
            private_key_path=str(paths.private_key),
            issuer_certificate_path=str(paths.issuer) if resource.issuer_certificate else "",
        )
        logger.info("[GENERATOR] Certificate for %s written to %s", domains, result.certificate_path)
        return result


def load_generator_config(**options) -> GeneratorConfig:
    """
    Build a GeneratorConfig, reporting the first validation problem.

    Raises:
        GeneratorConfigError: The options are invalid.
    """
    try:
        return GeneratorConfig(**options)
    except ValidationError as e:
        first = e.errors()[0]
        message = str(first.get("msg", e))
        # pydantic prefixes messages raised from validators
        message = message.removeprefix("Value error, ")
        raise GeneratorConfigError(message) from e
