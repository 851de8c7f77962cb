"""
Merchant credential validation for inbound Payme calls.

Payme authenticates with HTTP Basic auth: ``login:password`` where the
login is the merchant login ("Paycom") and the password is either the
merchant key or, in signature mode, an HMAC-SHA256 of the request body
keyed with the merchant key.
"""
import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, NoReturn, Optional, Tuple

import structlog

from payme_merchant.config import Settings
from payme_merchant.core.errors import AuthorizationError

logger = structlog.get_logger(__name__)

BASIC_SCHEME = "basic"


@dataclass(frozen=True)
class MerchantCredentials:
    """Credentials the validator checks against."""

    login: str
    key: str
    signature_mode: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "MerchantCredentials":
        return cls(
            login=settings.payme_merchant_login,
            key=settings.payme_merchant_key,
            signature_mode=settings.payme_auth_mode == "signature",
        )

    def __repr__(self) -> str:
        return f"MerchantCredentials(login={self.login!r}, signature_mode={self.signature_mode})"


def canonical_json(payload: Any) -> str:
    """Compact JSON with keys in the order they were received."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def compute_signature(payload: Any, key: str) -> str:
    """
    Compute the request signature.

    Args:
        payload: Parsed request body
        key: Merchant key

    Returns:
        str: Lowercase hex HMAC-SHA256 digest
    """
    return hmac.new(
        key.encode("utf-8"), canonical_json(payload).encode("utf-8"), hashlib.sha256
    ).hexdigest()


def build_authorization_header(login: str, password: str) -> str:
    """Build a Basic authorization header value."""
    token = base64.b64encode(f"{login}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


class CredentialValidator:
    """
    Validates the Authorization header of a merchant API call.

    Checks run in a fixed order and every failure raises the same
    AuthorizationError, so callers cannot tell which check failed.
    No database access happens here.
    """

    def __init__(self, credentials: MerchantCredentials):
        self.credentials = credentials

    def validate(self, authorization: Optional[str], body: bytes) -> None:
        """
        Validate credentials for a request.

        Args:
            authorization: Raw Authorization header value (None if absent)
            body: Raw request body

        Raises:
            AuthorizationError: If any check fails
        """
        if not authorization:
            self._reject("header_missing")

        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != BASIC_SCHEME or not token.strip():
            self._reject("scheme_invalid")

        try:
            decoded = base64.b64decode(token.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            self._reject("token_undecodable")

        login, separator, password = decoded.partition(":")
        if not separator:
            self._reject("token_malformed")

        # Both comparisons always run; a bad login and a bad password take one path.
        expected, body_signable = self._expected_password(body)
        login_ok = _constant_time_equals(login, self.credentials.login)
        password_ok = _constant_time_equals(password, expected)
        if not (login_ok & password_ok & body_signable):
            self._reject("credentials_mismatch")

    def _expected_password(self, body: bytes) -> Tuple[str, bool]:
        """Return the password to compare against and whether the body could be signed."""
        if not self.credentials.signature_mode:
            return self.credentials.key, True
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return compute_signature(body.decode("utf-8", "replace"), self.credentials.key), False
        return compute_signature(payload, self.credentials.key), True

    @staticmethod
    def _reject(stage: str) -> NoReturn:
        logger.warning("payme_authorization_failed", stage=stage)
        raise AuthorizationError()
