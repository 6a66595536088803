"""
Unit tests for the certificate generator.
Tests option validation, artifact output and provider lifecycle.
"""
import asyncio
import os
import stat
from unittest.mock import AsyncMock, MagicMock

import pytest

from autocert.acme_client import LETSENCRYPT_PRODUCTION, CertificateResource, KeyType
from autocert.challenges import ChallengeStore, HTTPChallengeServer
from autocert.errors import (
    GeneratorConfigError,
    MalformedResponseError,
    ObtainError,
    RegistrationError,
)
from autocert.generator import Generator, GeneratorConfig, load_generator_config


class FakeClient:
    """Stands in for ACMEClient, returning a canned resource."""

    def __init__(self, resource=None, register_error=None, obtain_error=None, delay=0):
        self.resource = resource
        self.register_error = register_error
        self.obtain_error = obtain_error
        self.delay = delay
        self.provider = None
        self.closed = False
        self.obtained = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True

    def set_http01_provider(self, provider):
        self.provider = provider

    async def register(self, terms_of_service_agreed=True):
        if self.register_error:
            raise self.register_error
        return "https://ca.test/acct/1"

    async def obtain(self, domains, bundle=True):
        await asyncio.sleep(self.delay)
        if self.obtain_error:
            raise self.obtain_error
        self.obtained = (domains, bundle)
        return self.resource


def _resource(domain="shop.example.com", certificate=b"CERT", private_key=b"KEY", issuer=b""):
    return CertificateResource(
        domain=domain,
        certificate=certificate,
        private_key=private_key,
        issuer_certificate=issuer,
    )


def _generator(tmp_path, client, provider=None, **options):
    config = dict(domains=["shop.example.com"], email="ops@example.com", output_dir=str(tmp_path))
    config.update(options)
    return Generator.from_options(
        http01_provider=provider or ChallengeStore(),
        client_factory=lambda cfg, key: client,
        **config,
    )


class TestGeneratorConfig:
    """Tests for option validation."""

    def test_defaults(self, tmp_path):
        config = load_generator_config(domains=["a.example.com"], email="x@example.com", output_dir=str(tmp_path))

        assert config.ca_directory_url == LETSENCRYPT_PRODUCTION
        assert config.http01_address == ":80"
        assert config.certificate_key_type == KeyType.RSA2048
        assert config.bundle is True

    @pytest.mark.parametrize("options,message", [
        ({"domains": []}, "at least one domain is required"),
        ({"domains": ["a.example.com", " "]}, "domain entries cannot be empty"),
        ({"email": " "}, "email is required"),
        ({"output_dir": ""}, "output directory is required"),
        ({"http01_address": "localhost"}, "invalid http-01 address"),
    ])
    def test_rejects_invalid_options(self, tmp_path, options, message):
        raw = dict(domains=["a.example.com"], email="x@example.com", output_dir=str(tmp_path))
        raw.update(options)

        with pytest.raises(GeneratorConfigError, match=message):
            load_generator_config(**raw)

    def test_from_options_reports_first_problem(self):
        with pytest.raises(GeneratorConfigError, match="at least one domain is required"):
            Generator.from_options(domains=[], email="", output_dir="")

    def test_normalizes_values(self, tmp_path):
        config = load_generator_config(
            domains=[" a.example.com "],
            email=" x@example.com ",
            output_dir=str(tmp_path),
            http01_address="",
            http01_proxy_header="x-forwarded-host",
            ca_directory_url=" ",
        )

        assert config.domains == ["a.example.com"]
        assert config.email == "x@example.com"
        assert config.http01_address == ":80"
        assert config.http01_proxy_header == "X-Forwarded-Host"
        assert config.ca_directory_url == LETSENCRYPT_PRODUCTION

    def test_config_is_frozen(self, tmp_path):
        config = GeneratorConfig(domains=["a.example.com"], email="x@example.com", output_dir=str(tmp_path))

        with pytest.raises(Exception):
            config.email = "other@example.com"


class TestGenerate:
    """Tests for Generator.generate()."""

    @pytest.mark.asyncio
    async def test_writes_artifacts(self, tmp_path):
        """Certificate and key land in the output dir, key mode 0600."""
        out = tmp_path / "out"
        client = FakeClient(_resource())
        generator = _generator(out, client)

        result = await generator.generate()

        assert result.certificate_path == str(out / "shop.example.com.crt")
        assert result.private_key_path == str(out / "shop.example.com.key")
        assert result.issuer_certificate_path == ""
        assert (out / "shop.example.com.crt").read_bytes() == b"CERT"
        assert (out / "shop.example.com.key").read_bytes() == b"KEY"
        assert stat.S_IMODE(os.stat(out / "shop.example.com.key").st_mode) == 0o600
        assert not (out / "shop.example.com-issuer.crt").exists()
        assert client.closed
        assert client.obtained == (["shop.example.com"], True)

    @pytest.mark.asyncio
    async def test_writes_issuer_when_returned(self, tmp_path):
        client = FakeClient(_resource(issuer=b"ISSUER"))

        result = await _generator(tmp_path, client, bundle=False).generate()

        assert result.issuer_certificate_path == str(tmp_path / "shop.example.com-issuer.crt")
        assert (tmp_path / "shop.example.com-issuer.crt").read_bytes() == b"ISSUER"
        assert client.obtained == (["shop.example.com"], False)

    @pytest.mark.asyncio
    async def test_slug_from_first_domain(self, tmp_path):
        client = FakeClient(_resource(domain="Shop.Example.COM"))

        result = await _generator(tmp_path, client, domains=["Shop.Example.COM", "www.example.com"]).generate()

        assert result.certificate_path.endswith("shop.example.com.crt")

    @pytest.mark.asyncio
    async def test_passes_provider_and_closes_it(self, tmp_path):
        provider = MagicMock(spec=ChallengeStore)
        provider.close = AsyncMock()
        client = FakeClient(_resource())

        await _generator(tmp_path, client, provider=provider).generate()

        assert client.provider is provider
        provider.close.assert_awaited_once()

    def test_default_provider_is_standalone_server(self, tmp_path):
        config = load_generator_config(
            domains=["a.example.com"],
            email="x@example.com",
            output_dir=str(tmp_path),
            http01_address="127.0.0.1:8080",
            http01_proxy_header="x-forwarded-host",
        )

        provider = Generator(config)._default_provider()

        assert isinstance(provider, HTTPChallengeServer)
        assert (provider.host, provider.port) == ("127.0.0.1", 8080)
        assert provider.proxy_header == "X-Forwarded-Host"

    @pytest.mark.asyncio
    async def test_registration_error_propagates(self, tmp_path):
        provider = MagicMock(spec=ChallengeStore)
        provider.close = AsyncMock()
        client = FakeClient(register_error=RegistrationError("denied"))

        with pytest.raises(RegistrationError):
            await _generator(tmp_path, client, provider=provider).generate()

        provider.close.assert_awaited_once()
        assert not (tmp_path / "shop.example.com.crt").exists()

    @pytest.mark.asyncio
    async def test_obtain_error_propagates(self, tmp_path):
        client = FakeClient(obtain_error=ObtainError("order failed"))

        with pytest.raises(ObtainError, match="order failed"):
            await _generator(tmp_path, client).generate()

    @pytest.mark.asyncio
    async def test_empty_key_is_malformed(self, tmp_path):
        client = FakeClient(_resource(private_key=b""))

        with pytest.raises(MalformedResponseError, match="empty private key"):
            await _generator(tmp_path, client).generate()
        assert not any(tmp_path.iterdir())

    @pytest.mark.asyncio
    async def test_empty_certificate_is_malformed(self, tmp_path):
        client = FakeClient(_resource(certificate=b""))

        with pytest.raises(MalformedResponseError, match="empty certificate payload"):
            await _generator(tmp_path, client).generate()

    @pytest.mark.asyncio
    async def test_concurrent_generators_are_independent(self, tmp_path):
        """Parallel runs with different output directories do not interfere."""
        first = _generator(tmp_path / "a", FakeClient(_resource(certificate=b"CERT-A"), delay=0.02))
        second = _generator(tmp_path / "b", FakeClient(_resource(certificate=b"CERT-B")))

        results = await asyncio.gather(first.generate(), second.generate())

        assert (tmp_path / "a" / "shop.example.com.crt").read_bytes() == b"CERT-A"
        assert (tmp_path / "b" / "shop.example.com.crt").read_bytes() == b"CERT-B"
        assert results[0].certificate_path != results[1].certificate_path

    @pytest.mark.asyncio
    async def test_concurrent_domain_sets_share_output_dir(self, tmp_path):
        """Two domain sets issued at once into one directory keep their pairs apart."""
        first = _generator(
            tmp_path,
            FakeClient(_resource("a.example.com", certificate=b"CERT-A", private_key=b"KEY-A"), delay=0.02),
            domains=["a.example.com"],
        )
        second = _generator(
            tmp_path,
            FakeClient(_resource("b.example.com", certificate=b"CERT-B", private_key=b"KEY-B")),
            domains=["b.example.com"],
        )

        result_a, result_b = await asyncio.gather(first.generate(), second.generate())

        assert result_a.certificate_path == str(tmp_path / "a.example.com.crt")
        assert result_b.certificate_path == str(tmp_path / "b.example.com.crt")
        assert (tmp_path / "a.example.com.crt").read_bytes() == b"CERT-A"
        assert (tmp_path / "a.example.com.key").read_bytes() == b"KEY-A"
        assert (tmp_path / "b.example.com.crt").read_bytes() == b"CERT-B"
        assert (tmp_path / "b.example.com.key").read_bytes() == b"KEY-B"
        assert sorted(p.name for p in tmp_path.iterdir() if p.is_file()) == [
            "a.example.com.crt", "a.example.com.key", "b.example.com.crt", "b.example.com.key",
        ]

    @pytest.mark.asyncio
    async def test_fresh_account_key_per_run(self, tmp_path):
        keys = []
        client = FakeClient(_resource())
        generator = Generator.from_options(
            domains=["shop.example.com"],
            email="ops@example.com",
            output_dir=str(tmp_path),
            http01_provider=ChallengeStore(),
            client_factory=lambda cfg, key: keys.append(key) or client,
            account_key_factory=lambda: object(),
        )

        await generator.generate()
        await generator.generate()

        assert len(keys) == 2
        assert keys[0] is not keys[1]
