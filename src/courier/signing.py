"""Payload signing and verification.

HMAC signatures let subscribers check that a delivery came from us and
that the body was not altered:

    X-Webhook-Signature: sha256=<hex HMAC-SHA256 of the exact body bytes>

Header-only schemes (API key, basic auth, bearer token) attach a stored
credential instead. They authenticate the sender but not the body, so
nothing ever verifies against them.

Schemes plug in through the SignatureScheme interface. Verification fails
closed: an unknown scheme, an empty secret or any internal error yields
False, never an exception.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any

from courier.exceptions import SignatureError
from courier.models import AuthScheme

logger = logging.getLogger(__name__)

MIN_SECRET_BYTES = 32

Credentials = Mapping[str, str | None]


def generate_secret(nbytes: int = MIN_SECRET_BYTES) -> str:
    """Generate a random URL-safe webhook secret.

    Args:
        nbytes: Random bytes of entropy (at least 32).

    Returns:
        URL-safe base64 token.
    """
    return secrets.token_urlsafe(max(nbytes, MIN_SECRET_BYTES))


def _as_bytes(payload: bytes | str) -> bytes:
    return payload if isinstance(payload, bytes) else payload.encode("utf-8")


class SignatureScheme(ABC):
    """Capability interface for a signature scheme.

    Attributes:
        scheme: The AuthScheme this implementation handles.
        credential_fields: Webhook credential fields the scheme needs.
        credential_headers: Headers that carry a credential and must be
            redacted from the delivery log.
    """

    scheme: AuthScheme
    credential_fields: tuple[str, ...] = ()
    credential_headers: tuple[str, ...] = ()

    @abstractmethod
    def sign(self, payload: bytes, secret: str) -> str:
        """Return the signature of payload as a string."""

    @abstractmethod
    def verify(self, payload: bytes, signature: str, secret: str) -> bool:
        """Check a signature. Must not leak timing information."""

    @abstractmethod
    def header_value(self, signature: str) -> str | None:
        """Value of the signature header, or None to send no header."""

    def auth_headers(self, credentials: Credentials) -> dict[str, str]:
        """Extra headers built from stored credentials."""
        return {}


class HmacScheme(SignatureScheme):
    """HMAC over the raw body bytes, hex encoded, with a "<prefix>=" tag."""

    def __init__(
        self, scheme: AuthScheme, digestmod: Callable[..., Any], prefix: str
    ) -> None:
        self.scheme = scheme
        self._digestmod = digestmod
        self._prefix = f"{prefix}="

    def sign(self, payload: bytes, secret: str) -> str:
        return hmac.new(
            key=secret.encode("utf-8"),
            msg=payload,
            digestmod=self._digestmod,
        ).hexdigest()

    def verify(self, payload: bytes, signature: str, secret: str) -> bool:
        if not signature or not secret:
            return False
        provided = signature
        if provided.lower().startswith(self._prefix):
            provided = provided[len(self._prefix) :]
        expected = self.sign(payload, secret)
        return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8"))

    def header_value(self, signature: str) -> str:
        return f"{self._prefix}{signature}"


class NoSignatureScheme(SignatureScheme):
    """Deliveries are sent unsigned; nothing ever verifies."""

    scheme = AuthScheme.NONE

    def sign(self, payload: bytes, secret: str) -> str:
        return ""

    def verify(self, payload: bytes, signature: str, secret: str) -> bool:
        return False

    def header_value(self, signature: str) -> None:
        return None


class HeaderCredentialScheme(NoSignatureScheme):
    """Base for schemes that send a stored credential instead of a signature.

    A missing credential sends no header; WebhookService rejects such
    webhooks when they are created or updated.
    """

    def auth_headers(self, credentials: Credentials) -> dict[str, str]:
        values = [credentials.get(name) for name in self.credential_fields]
        if not all(values):
            return {}
        return self._headers(*(str(value) for value in values))

    @abstractmethod
    def _headers(self, *values: str) -> dict[str, str]: ...


class ApiKeyScheme(HeaderCredentialScheme):
    scheme = AuthScheme.API_KEY
    credential_fields = ("api_key",)
    credential_headers = ("X-API-Key",)

    def _headers(self, *values: str) -> dict[str, str]:
        return {"X-API-Key": values[0]}


class BasicAuthScheme(HeaderCredentialScheme):
    scheme = AuthScheme.BASIC_AUTH
    credential_fields = ("basic_auth_username", "basic_auth_password")
    credential_headers = ("Authorization",)

    def _headers(self, *values: str) -> dict[str, str]:
        username, password = values
        token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
        return {"Authorization": f"Basic {token}"}


class BearerTokenScheme(HeaderCredentialScheme):
    scheme = AuthScheme.BEARER_TOKEN
    credential_fields = ("bearer_token",)
    credential_headers = ("Authorization",)

    def _headers(self, *values: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {values[0]}"}


class Signer:
    """Registry of signature schemes with sign/verify entry points.

    Example:
        ```python
        signer = Signer()
        body = b'{"eventType": "order.created"}'
        sig = signer.sign(body, secret, AuthScheme.HMAC_SHA256)
        assert signer.verify(body, sig, secret, AuthScheme.HMAC_SHA256)
        ```
    """

    def __init__(
        self,
        header_name: str = "X-Webhook-Signature",
        schemes: list[SignatureScheme] | None = None,
    ) -> None:
        self.header_name = header_name
        self._schemes: dict[AuthScheme, SignatureScheme] = {}
        for scheme in schemes or default_schemes():
            self.register(scheme)

    def register(self, scheme: SignatureScheme) -> None:
        """Add or replace a scheme."""
        self._schemes[scheme.scheme] = scheme

    def _lookup(self, scheme: AuthScheme | str) -> SignatureScheme | None:
        try:
            key = AuthScheme(scheme)
        except ValueError:
            return None
        return self._schemes.get(key)

    def _require(self, scheme: AuthScheme | str) -> SignatureScheme:
        impl = self._lookup(scheme)
        if impl is None:
            raise SignatureError(f"Unsupported signature scheme: {scheme}")
        return impl

    @property
    def sensitive_headers(self) -> frozenset[str]:
        """Lower-cased names of every header that carries a secret."""
        names = {self.header_name.lower()}
        for impl in self._schemes.values():
            names.update(name.lower() for name in impl.credential_headers)
        return frozenset(names)

    def sign(self, payload: bytes | str, secret: str, scheme: AuthScheme | str) -> str:
        """Sign payload bytes.

        Raises:
            SignatureError: If the scheme is not registered.
        """
        return self._require(scheme).sign(_as_bytes(payload), secret)

    def verify(
        self,
        payload: bytes | str,
        signature: str,
        secret: str,
        scheme: AuthScheme | str = AuthScheme.HMAC_SHA256,
    ) -> bool:
        """Verify a signature. Returns False on any problem."""
        impl = self._lookup(scheme)
        if impl is None:
            logger.warning("Signature verification with unknown scheme %r", scheme)
            return False
        try:
            valid = impl.verify(_as_bytes(payload), signature, secret)
        except Exception as e:
            logger.warning("Signature verification error (%s): %s", type(e).__name__, e)
            return False
        if not valid:
            logger.info("Signature verification failed for scheme %s", impl.scheme.value)
        return valid

    def missing_credentials(
        self, scheme: AuthScheme | str, credentials: Credentials
    ) -> list[str]:
        """Credential fields the scheme needs but credentials leaves empty."""
        impl = self._require(scheme)
        return [name for name in impl.credential_fields if not credentials.get(name)]

    def signature_headers(
        self,
        payload: bytes,
        secret: str,
        scheme: AuthScheme | str,
        credentials: Credentials | None = None,
    ) -> dict[str, str]:
        """Authentication headers for one request.

        The signature header for HMAC schemes, the credential header for
        header-only schemes, nothing for NONE.
        """
        impl = self._require(scheme)
        headers = impl.auth_headers(credentials or {})
        value = impl.header_value(impl.sign(payload, secret))
        if value is not None:
            headers[self.header_name] = value
        return headers


def default_schemes() -> list[SignatureScheme]:
    return [
        HmacScheme(AuthScheme.HMAC_SHA256, hashlib.sha256, "sha256"),
        HmacScheme(AuthScheme.HMAC_SHA512, hashlib.sha512, "sha512"),
        ApiKeyScheme(),
        BasicAuthScheme(),
        BearerTokenScheme(),
        NoSignatureScheme(),
    ]


__all__ = [
    "ApiKeyScheme",
    "BasicAuthScheme",
    "BearerTokenScheme",
    "HeaderCredentialScheme",
    "HmacScheme",
    "NoSignatureScheme",
    "SignatureScheme",
    "Signer",
    "default_schemes",
    "generate_secret",
]
