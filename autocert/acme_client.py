"""
ACME client for Let's Encrypt and compatible certificate authorities.

Implements the RFC 8555 flow needed for HTTP-01 issuance: account
registration, ordering, challenge response, finalization and download.
Requests are signed with the account key as flattened JWS (ES256/ES384 for EC
account keys, RS256 for RSA ones).
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import httpx
import josepy as jose
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from .challenges import HTTP01Provider
from .errors import (
    ACMEError,
    ChallengeValidationError,
    MalformedResponseError,
    ObtainError,
    RegistrationError,
)


logger = logging.getLogger(__name__)


# ACME directory URLs
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"

_PEM_CERTIFICATE = re.compile(
    rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----",
    re.DOTALL,
)

AccountKey = Union[ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]


class KeyType(str, Enum):
    """Key algorithms for issued certificates."""

    RSA2048 = "rsa2048"
    RSA3072 = "rsa3072"
    RSA4096 = "rsa4096"
    RSA8192 = "rsa8192"
    EC256 = "ec256"
    EC384 = "ec384"


def generate_private_key(key_type: KeyType) -> Union[ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]:
    """Generate a certificate private key of the given type."""
    key_type = KeyType(key_type)
    if key_type == KeyType.EC256:
        return ec.generate_private_key(ec.SECP256R1())
    if key_type == KeyType.EC384:
        return ec.generate_private_key(ec.SECP384R1())
    return rsa.generate_private_key(public_exponent=65537, key_size=int(key_type.value[3:]))


def generate_account_key() -> ec.EllipticCurvePrivateKey:
    """Generate an ephemeral P-256 account key."""
    return ec.generate_private_key(ec.SECP256R1())


def split_pem_chain(pem: bytes) -> list[bytes]:
    """Split a PEM bundle into individual certificate blocks."""
    return [block + b"\n" for block in _PEM_CERTIFICATE.findall(pem)]


@dataclass
class CertificateResource:
    """Material returned by a successful order."""

    domain: str
    certificate: bytes
    private_key: bytes
    issuer_certificate: bytes = b""
    certificate_url: str = ""


class ACMEClient:
    """
    ACME client bound to one directory and one account key.

    Use as an async context manager so the underlying HTTP connection pool is
    released:

        async with ACMEClient(LETSENCRYPT_STAGING, generate_account_key(), "ops@example.com") as client:
            client.set_http01_provider(provider)
            await client.register()
            resource = await client.obtain(["example.com"])
    """

    def __init__(
        self,
        directory_url: str,
        account_key: AccountKey,
        email: str,
        key_type: KeyType = KeyType.RSA2048,
        http_client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = 2.0,
        poll_attempts: int = 30,
        timeout: float = 30.0,
    ):
        """
        Initialize ACME client.

        Args:
            directory_url: ACME directory endpoint
            account_key: Private key used to sign requests
            email: Contact email for the account
            key_type: Algorithm for the certificate private key
            http_client: Preconfigured client, mostly for tests
            poll_interval: Seconds between authorization/order polls
            poll_attempts: Polls before giving up
            timeout: Per-request timeout in seconds
        """
        self.directory_url = directory_url
        self.email = email
        self.key_type = KeyType(key_type)
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts

        self._account_key = account_key
        if isinstance(account_key, ec.EllipticCurvePrivateKey):
            self._jwk = jose.JWKEC(key=account_key)
        else:
            self._jwk = jose.JWKRSA(key=account_key)

        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._provider: Optional[HTTP01Provider] = None

        # Will be populated during registration
        self.directory: dict = {}
        self.account_url: Optional[str] = None
        self.nonce: Optional[str] = None

    async def __aenter__(self) -> "ACMEClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def set_http01_provider(self, provider: HTTP01Provider) -> None:
        self._provider = provider

    # =========================================================================
    # Transport
    # =========================================================================

    async def _get_directory(self) -> dict:
        if not self.directory:
            resp = await self._http.get(self.directory_url)
            if resp.status_code >= 400:
                raise ACMEError(
                    f"failed to fetch ACME directory {self.directory_url}: HTTP {resp.status_code}",
                    status_code=resp.status_code,
                )
            self.directory = resp.json()
            logger.info("[ACME] Fetched directory from %s", self.directory_url)
        return self.directory

    async def _get_nonce(self) -> str:
        """Get a fresh nonce from the ACME server."""
        directory = await self._get_directory()
        resp = await self._http.head(directory["newNonce"])
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise MalformedResponseError("ACME server returned no Replay-Nonce")
        return nonce

    def _algorithm(self) -> str:
        if isinstance(self._account_key, ec.EllipticCurvePrivateKey):
            return "ES384" if self._account_key.curve.key_size == 384 else "ES256"
        return "RS256"

    def _sign(self, data: bytes) -> bytes:
        key = self._account_key
        if isinstance(key, ec.EllipticCurvePrivateKey):
            size = (key.curve.key_size + 7) // 8
            digest = hashes.SHA384() if key.curve.key_size == 384 else hashes.SHA256()
            r, s = decode_dss_signature(key.sign(data, ec.ECDSA(digest)))
            return r.to_bytes(size, "big") + s.to_bytes(size, "big")
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    def _sign_request(self, url: str, payload: Optional[dict], use_jwk: bool = False) -> dict:
        """
        Sign a request with the account key.

        Args:
            url: The URL being requested
            payload: The payload to sign, or None for POST-as-GET
            use_jwk: Embed the public JWK instead of the account URL (registration)
        """
        if payload is None:
            payload_b64 = ""
        else:
            payload_b64 = jose.json_util.encode_b64jose(json.dumps(payload).encode("utf-8"))

        protected = {
            "alg": self._algorithm(),
            "nonce": self.nonce,
            "url": url,
        }
        if use_jwk:
            protected["jwk"] = self._jwk.public_key().to_json()
        else:
            protected["kid"] = self.account_url

        protected_b64 = jose.json_util.encode_b64jose(json.dumps(protected).encode("utf-8"))
        signature = self._sign(f"{protected_b64}.{payload_b64}".encode("utf-8"))

        return {
            "protected": protected_b64,
            "payload": payload_b64,
            "signature": jose.json_util.encode_b64jose(signature),
        }

    async def _acme_request(
        self,
        url: str,
        payload: Optional[dict] = None,
        use_jwk: bool = False,
        accept: Optional[str] = None,
    ) -> httpx.Response:
        """
        Make a signed ACME request, retrying once on a stale nonce.

        Raises:
            ACMEError: The server answered with an error status.
        """
        headers = {"Content-Type": "application/jose+json"}
        if accept:
            headers["Accept"] = accept

        for attempt in range(2):
            if self.nonce is None:
                self.nonce = await self._get_nonce()

            signed = self._sign_request(url, payload, use_jwk)
            self.nonce = None
            resp = await self._http.post(url, content=json.dumps(signed), headers=headers)

            # Update nonce
            if "Replay-Nonce" in resp.headers:
                self.nonce = resp.headers["Replay-Nonce"]

            if resp.status_code < 400:
                return resp

            problem = _problem_document(resp)
            problem_type = problem.get("type", "")
            if problem_type.endswith(":badNonce") and attempt == 0:
                logger.debug("[ACME] Bad nonce from %s, retrying", url)
                continue
            raise ACMEError(
                f"ACME request to {url} failed: {resp.status_code} {problem.get('detail', resp.reason_phrase)}",
                status_code=resp.status_code,
                problem_type=problem_type or None,
                detail=problem.get("detail"),
            )

        raise ACMEError(f"ACME request to {url} failed: repeated bad nonce")

    async def _post_json(self, url: str, payload: Optional[dict] = None) -> tuple[dict, httpx.Response]:
        resp = await self._acme_request(url, payload)
        body = resp.json() if resp.content else {}
        return body, resp

    # =========================================================================
    # Account
    # =========================================================================

    async def register(self, terms_of_service_agreed: bool = True) -> str:
        """
        Register an account, or fetch the existing one for this key.

        Returns:
            The account URL used as "kid" in later requests.

        Raises:
            RegistrationError: The CA refused the registration.
        """
        payload = {
            "termsOfServiceAgreed": terms_of_service_agreed,
            "contact": [f"mailto:{self.email}"],
        }
        try:
            directory = await self._get_directory()
            resp = await self._acme_request(directory["newAccount"], payload, use_jwk=True)
        except ACMEError as e:
            raise RegistrationError(
                f"ACME account registration failed: {e}",
                status_code=e.status_code,
                problem_type=e.problem_type,
                detail=e.detail,
            ) from e
        except (httpx.HTTPError, KeyError) as e:
            raise RegistrationError(f"ACME account registration failed: {e}") from e

        self.account_url = resp.headers.get("Location")
        if not self.account_url:
            raise RegistrationError("ACME server returned no account URL")
        logger.info("[ACME] Account registered/retrieved: %s", self.account_url)
        return self.account_url

    def key_authorization(self, token: str) -> str:
        """Key authorization for a challenge token (RFC 8555 section 8.1)."""
        thumbprint = jose.json_util.encode_b64jose(self._jwk.thumbprint())
        return f"{token}.{thumbprint}"

    # =========================================================================
    # Issuance
    # =========================================================================

    async def obtain(self, domains: list[str], bundle: bool = True) -> CertificateResource:
        """
        Order, validate and download a certificate covering every domain.

        Args:
            domains: Names to include; the first becomes the subject CN
            bundle: Return the issuer chain appended to the certificate

        Raises:
            ObtainError: Ordering, validation or finalization failed.
            MalformedResponseError: The CA returned no usable certificate.
        """
        if not domains:
            raise ObtainError("no domains to order")
        if self._provider is None:
            raise ObtainError("no http-01 provider configured")
        if not self.account_url:
            raise ObtainError("account is not registered")

        try:
            return await self._obtain(domains, bundle)
        except (ObtainError, MalformedResponseError):
            raise
        except ACMEError as e:
            raise ObtainError(
                f"certificate order for {', '.join(domains)} failed: {e}",
                status_code=e.status_code,
                problem_type=e.problem_type,
                detail=e.detail,
            ) from e
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise ObtainError(f"certificate order for {', '.join(domains)} failed: {e}") from e

    async def _obtain(self, domains: list[str], bundle: bool) -> CertificateResource:
        directory = await self._get_directory()

        logger.info("[ACME] Creating certificate order for %s", ", ".join(domains))
        order, resp = await self._post_json(
            directory["newOrder"],
            {"identifiers": [{"type": "dns", "value": domain} for domain in domains]},
        )
        order_url = resp.headers.get("Location")
        if not order_url:
            raise MalformedResponseError("ACME server returned no order URL")

        for auth_url in order["authorizations"]:
            await self._authorize(auth_url)

        cert_key = generate_private_key(self.key_type)
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains]),
                critical=False,
            )
            .sign(cert_key, hashes.SHA256())
        )
        csr_b64 = jose.json_util.encode_b64jose(csr.public_bytes(serialization.Encoding.DER))

        logger.info("[ACME] Finalizing certificate order")
        order, _ = await self._post_json(order["finalize"], {"csr": csr_b64})
        order = await self._poll_order(order_url, order)

        cert_url = order.get("certificate")
        if not cert_url:
            raise MalformedResponseError("valid order has no certificate URL")
        resp = await self._acme_request(cert_url, None, accept="application/pem-certificate-chain")

        blocks = split_pem_chain(resp.content)
        if not blocks:
            raise MalformedResponseError("empty certificate payload received from ACME server")

        key_pem = cert_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        issuer = b"".join(blocks[1:])
        certificate = b"".join(blocks) if bundle else blocks[0]

        logger.info("[ACME] Certificate issued for %s", ", ".join(domains))
        return CertificateResource(
            domain=domains[0],
            certificate=certificate,
            private_key=key_pem,
            issuer_certificate=issuer,
            certificate_url=cert_url,
        )

    async def _authorize(self, auth_url: str) -> None:
        auth, _ = await self._post_json(auth_url)
        domain = auth.get("identifier", {}).get("value", "")
        if auth["status"] == "valid":
            logger.debug("[ACME] Authorization for %s already valid", domain)
            return

        challenge = next((ch for ch in auth["challenges"] if ch["type"] == "http-01"), None)
        if challenge is None:
            raise ObtainError(f"no http-01 challenge offered for {domain}")

        token = challenge["token"]
        key_authorization = self.key_authorization(token)
        await self._provider.present(domain, token, key_authorization)
        try:
            # Tell the CA we are ready
            logger.info("[ACME] Responding to http-01 challenge for %s", domain)
            await self._post_json(challenge["url"], {})

            for _ in range(self.poll_attempts):
                await asyncio.sleep(self.poll_interval)
                auth, _ = await self._post_json(auth_url)
                if auth["status"] == "valid":
                    logger.info("[ACME] Authorization valid for %s", domain)
                    return
                if auth["status"] == "invalid":
                    detail = "Unknown error"
                    for ch in auth["challenges"]:
                        if ch["type"] == "http-01" and ch.get("error"):
                            detail = ch["error"].get("detail", detail)
                    raise ChallengeValidationError(f"http-01 challenge for {domain} failed: {detail}", detail=detail)
            raise ObtainError(f"authorization for {domain} timed out")
        finally:
            await self._provider.cleanup(domain, token, key_authorization)

    async def _poll_order(self, order_url: str, order: dict) -> dict:
        for _ in range(self.poll_attempts):
            if order["status"] == "valid":
                return order
            if order["status"] == "invalid":
                raise ObtainError(f"order {order_url} became invalid")
            await asyncio.sleep(self.poll_interval)
            order, _ = await self._post_json(order_url)
        if order["status"] == "valid":
            return order
        raise ObtainError(f"order {order_url} was not finalized in time")


def _problem_document(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
