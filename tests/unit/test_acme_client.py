"""
Unit tests for the ACME client.
Runs the full HTTP-01 flow against an in-process fake CA.
"""
import json

import httpx
import josepy as jose
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from autocert.acme_client import (
    ACMEClient,
    KeyType,
    generate_account_key,
    generate_private_key,
    split_pem_chain,
)
from autocert.challenges import ChallengeStore
from autocert.errors import (
    ChallengeValidationError,
    MalformedResponseError,
    ObtainError,
    RegistrationError,
)


CA = "https://ca.test"


class FakeCA:
    """Minimal RFC 8555 server covering one order with one authorization."""

    def __init__(self, chain=b"", provider=None, fail_challenge=False, bad_nonce_once=False, reject_account=False):
        self.chain = chain
        self.provider = provider
        self.fail_challenge = fail_challenge
        self.bad_nonce_once = bad_nonce_once
        self.reject_account = reject_account
        self.auth_status = "pending"
        self.seen_key_authorization = None
        self.requests = []
        self._nonces = 0

    def _nonce(self):
        self._nonces += 1
        return f"nonce-{self._nonces}"

    def _json(self, status, body, **headers):
        headers["Replay-Nonce"] = self._nonce()
        return httpx.Response(status, json=body, headers=headers)

    def handler(self, request):
        path = request.url.path
        if path == "/directory":
            return httpx.Response(200, json={
                "newNonce": f"{CA}/new-nonce",
                "newAccount": f"{CA}/new-account",
                "newOrder": f"{CA}/new-order",
            })
        if path == "/new-nonce":
            return httpx.Response(200, headers={"Replay-Nonce": self._nonce()})

        body = json.loads(request.content)
        protected = json.loads(jose.json_util.decode_b64jose(body["protected"]))
        payload = json.loads(jose.json_util.decode_b64jose(body["payload"])) if body["payload"] else None
        self.requests.append((path, protected, payload, body, request.headers))

        if path == "/new-account":
            if self.bad_nonce_once:
                self.bad_nonce_once = False
                return self._json(400, {"type": "urn:ietf:params:acme:error:badNonce", "detail": "stale"})
            if self.reject_account:
                return self._json(403, {"type": "urn:ietf:params:acme:error:unauthorized", "detail": "blocked"})
            return self._json(201, {"status": "valid"}, Location=f"{CA}/acct/1")
        if path == "/new-order":
            return self._json(201, {
                "status": "pending",
                "authorizations": [f"{CA}/authz/1"],
                "finalize": f"{CA}/finalize/1",
            }, Location=f"{CA}/order/1")
        if path == "/authz/1":
            challenge = {"type": "http-01", "url": f"{CA}/chall/1", "token": "tok_1"}
            if self.auth_status == "invalid":
                challenge["error"] = {"detail": "connection refused"}
            return self._json(200, {
                "status": self.auth_status,
                "identifier": {"type": "dns", "value": "shop.example.com"},
                "challenges": [{"type": "dns-01", "url": f"{CA}/chall/2", "token": "dns"}, challenge],
            })
        if path == "/chall/1":
            if self.provider is not None:
                self.seen_key_authorization = self.provider.get("tok_1")
            self.auth_status = "invalid" if self.fail_challenge else "valid"
            return self._json(200, {"status": "processing"})
        if path == "/finalize/1":
            return self._json(200, {"status": "processing"})
        if path == "/order/1":
            return self._json(200, {"status": "valid", "certificate": f"{CA}/cert/1"})
        if path == "/cert/1":
            return httpx.Response(
                200,
                content=self.chain,
                headers={"Content-Type": "application/pem-certificate-chain", "Replay-Nonce": self._nonce()},
            )
        return self._json(404, {"type": "urn:ietf:params:acme:error:malformed"})


def _client(ca, account_key=None):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(ca.handler))
    return ACMEClient(
        f"{CA}/directory",
        account_key or generate_account_key(),
        "ops@example.com",
        key_type=KeyType.EC256,
        http_client=http_client,
        poll_interval=0,
        poll_attempts=3,
    )


@pytest.fixture
def chain(self_signed):
    leaf, _ = self_signed(["shop.example.com"])
    issuer, _ = self_signed(["Fake Intermediate"])
    return leaf, issuer


class TestKeys:
    def test_generate_private_key_types(self):
        assert generate_private_key(KeyType.EC384).curve.name == "secp384r1"
        assert generate_private_key(KeyType.RSA2048).key_size == 2048

    def test_split_pem_chain(self, chain):
        leaf, issuer = chain

        blocks = split_pem_chain(leaf + issuer)

        assert len(blocks) == 2
        assert blocks[0].strip() == leaf.strip()


class TestRegister:
    """Tests for ACMEClient.register()."""

    @pytest.mark.asyncio
    async def test_registers_with_jwk_and_signs_es256(self):
        """Registration embeds the public JWK and carries a valid ES256 signature."""
        account_key = generate_account_key()
        ca = FakeCA()

        async with _client(ca, account_key) as client:
            account_url = await client.register()

        assert account_url == f"{CA}/acct/1"
        path, protected, payload, body, _ = ca.requests[0]
        assert protected["alg"] == "ES256"
        assert protected["url"] == f"{CA}/new-account"
        assert "jwk" in protected and "kid" not in protected
        assert payload == {"termsOfServiceAgreed": True, "contact": ["mailto:ops@example.com"]}

        raw = jose.json_util.decode_b64jose(body["signature"])
        signature = encode_dss_signature(int.from_bytes(raw[:32], "big"), int.from_bytes(raw[32:], "big"))
        account_key.public_key().verify(
            signature,
            f"{body['protected']}.{body['payload']}".encode(),
            ec.ECDSA(hashes.SHA256()),
        )

    @pytest.mark.asyncio
    async def test_retries_once_on_bad_nonce(self):
        ca = FakeCA(bad_nonce_once=True)

        async with _client(ca) as client:
            await client.register()

        account_calls = [r for r in ca.requests if r[0] == "/new-account"]
        assert len(account_calls) == 2
        assert account_calls[0][1]["nonce"] != account_calls[1][1]["nonce"]

    @pytest.mark.asyncio
    async def test_rejection_raises_registration_error(self):
        ca = FakeCA(reject_account=True)

        async with _client(ca) as client:
            with pytest.raises(RegistrationError, match="blocked") as exc_info:
                await client.register()

        assert exc_info.value.status_code == 403
        assert exc_info.value.problem_type == "urn:ietf:params:acme:error:unauthorized"

    def test_key_authorization_uses_thumbprint(self):
        account_key = generate_account_key()
        client = ACMEClient(f"{CA}/directory", account_key, "ops@example.com")

        thumbprint = jose.json_util.encode_b64jose(jose.JWKEC(key=account_key).thumbprint())

        assert client.key_authorization("tok_1") == f"tok_1.{thumbprint}"


class TestObtain:
    """Tests for ACMEClient.obtain()."""

    @pytest.mark.asyncio
    async def test_full_flow_bundled(self, chain):
        leaf, issuer = chain
        provider = ChallengeStore()
        ca = FakeCA(chain=leaf + issuer, provider=provider)

        async with _client(ca) as client:
            client.set_http01_provider(provider)
            await client.register()
            resource = await client.obtain(["shop.example.com"])
            expected_key_auth = client.key_authorization("tok_1")

        assert ca.seen_key_authorization == expected_key_auth
        assert provider.get("tok_1") is None
        assert resource.domain == "shop.example.com"
        assert resource.certificate.strip() == (leaf + issuer).strip()
        assert resource.issuer_certificate.strip() == issuer.strip()
        assert b"PRIVATE KEY" in resource.private_key
        assert resource.certificate_url == f"{CA}/cert/1"

    @pytest.mark.asyncio
    async def test_unbundled_returns_leaf_only(self, chain):
        leaf, issuer = chain
        provider = ChallengeStore()
        ca = FakeCA(chain=leaf + issuer, provider=provider)

        async with _client(ca) as client:
            client.set_http01_provider(provider)
            await client.register()
            resource = await client.obtain(["shop.example.com"], bundle=False)

        assert resource.certificate.strip() == leaf.strip()
        assert resource.issuer_certificate.strip() == issuer.strip()

    @pytest.mark.asyncio
    async def test_requests_after_registration_use_kid(self, chain):
        leaf, _ = chain
        provider = ChallengeStore()
        ca = FakeCA(chain=leaf, provider=provider)

        async with _client(ca) as client:
            client.set_http01_provider(provider)
            await client.register()
            await client.obtain(["shop.example.com", "www.shop.example.com"])

        order = next(r for r in ca.requests if r[0] == "/new-order")
        assert order[1]["kid"] == f"{CA}/acct/1"
        assert "jwk" not in order[1]
        assert order[2] == {"identifiers": [
            {"type": "dns", "value": "shop.example.com"},
            {"type": "dns", "value": "www.shop.example.com"},
        ]}
        download = next(r for r in ca.requests if r[0] == "/cert/1")
        assert download[2] is None
        assert download[4]["accept"] == "application/pem-certificate-chain"

    @pytest.mark.asyncio
    async def test_failed_challenge(self, chain):
        """An invalid authorization raises and still withdraws the token."""
        provider = ChallengeStore()
        ca = FakeCA(chain=chain[0], provider=provider, fail_challenge=True)

        async with _client(ca) as client:
            client.set_http01_provider(provider)
            await client.register()
            with pytest.raises(ChallengeValidationError, match="connection refused"):
                await client.obtain(["shop.example.com"])

        assert provider.count() == 0

    @pytest.mark.asyncio
    async def test_empty_chain_is_malformed(self):
        provider = ChallengeStore()
        ca = FakeCA(chain=b"", provider=provider)

        async with _client(ca) as client:
            client.set_http01_provider(provider)
            await client.register()
            with pytest.raises(MalformedResponseError, match="empty certificate payload"):
                await client.obtain(["shop.example.com"])

    @pytest.mark.asyncio
    async def test_requires_registration_and_provider(self):
        ca = FakeCA()

        async with _client(ca) as client:
            with pytest.raises(ObtainError, match="no http-01 provider"):
                await client.obtain(["shop.example.com"])
            client.set_http01_provider(ChallengeStore())
            with pytest.raises(ObtainError, match="not registered"):
                await client.obtain(["shop.example.com"])
            with pytest.raises(ObtainError, match="no domains"):
                await client.obtain([])
