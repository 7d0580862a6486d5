from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple

from staffledger.config import Settings
from staffledger.logging import get_logger
from staffledger.service.errors import ConfigurationError, InvalidTokenError, ServiceError
from staffledger.storage.models import TokenClaims

logger = get_logger(__name__)

# Longest digest the key can support wins; keys under 256 bits are refused.
_HMAC_VARIANTS: Tuple[Tuple[str, int, Callable[..., Any]], ...] = (
    ("HS512", 64, hashlib.sha512),
    ("HS384", 48, hashlib.sha384),
    ("HS256", 32, hashlib.sha256),
)
MIN_KEY_BYTES = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_signing_key(secret: Optional[str]) -> Tuple[bytes, str, Callable[..., Any]]:
    """Decode a base64 signing secret and pick the HMAC variant for its length.

    Raises:
        ConfigurationError: secret missing, not base64, or shorter than 256 bits
    """
    if not secret:
        raise ConfigurationError("signing secret is not configured")
    try:
        key = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("signing secret is not valid base64") from exc
    for alg, min_bytes, digest in _HMAC_VARIANTS:
        if len(key) >= min_bytes:
            return key, alg, digest
    raise ConfigurationError(
        "signing secret must decode to at least 256 bits",
        detail={"key_bits": len(key) * 8},
    )


class TokenService:
    """Issues and checks compact HMAC-signed bearer tokens.

    Claims are limited to ``sub`` (principal email), ``iat`` and ``exp``,
    both as epoch seconds. ``verify`` checks structure and signature only;
    expiry is judged by ``is_valid``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or _utcnow
        self._key: Optional[Tuple[bytes, str, Callable[..., Any]]] = None

    def _now(self) -> datetime:
        return self._clock()

    def _signing_key(self) -> Tuple[bytes, str, Callable[..., Any]]:
        if self._key is None:
            self._key = resolve_signing_key(self.settings.signing_secret)
        return self._key

    @property
    def algorithm(self) -> str:
        return self._signing_key()[1]

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        key, _, digest = self._signing_key()
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), digest).digest()
        )

    def claims_for(self, subject: str) -> TokenClaims:
        issued_at = self._now().replace(microsecond=0)
        return TokenClaims(
            subject=subject,
            issued_at=issued_at,
            expires_at=issued_at
            + timedelta(minutes=self.settings.token_validity_minutes),
        )

    def encode(self, claims: TokenClaims) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        payload = {
            "sub": claims.subject,
            "iat": int(claims.issued_at.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
        }
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, email: str) -> str:
        """Sign a token for ``email`` valid for ``token_validity_minutes``."""
        return self.encode(self.claims_for(email))

    def verify(self, token: str) -> TokenClaims:
        """Check structure and signature and return the claims.

        Expired tokens still verify.

        Raises:
            InvalidTokenError: malformed token or signature mismatch
            ConfigurationError: signing key missing or unusable
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError("token is empty")
        # Segments are base64url; compare_digest also refuses non-ASCII str.
        if not token.isascii():
            raise InvalidTokenError("token is malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("token is malformed")

        _, expected_alg, _ = self._signing_key()
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("token header is malformed")
        # Only the algorithm implied by the configured key is accepted.
        if not isinstance(header, dict) or header.get("alg") != expected_alg:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("token algorithm is not accepted")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("token payload is malformed")
        if not isinstance(payload, dict):
            raise InvalidTokenError("token payload is malformed")

        subject = payload.get("sub")
        if not isinstance(subject, str):
            raise InvalidTokenError("token subject is missing")
        try:
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise InvalidTokenError("token timestamps are malformed")
        return TokenClaims(subject=subject, issued_at=issued_at, expires_at=expires_at)

    def is_valid(self, token: str) -> bool:
        """True when the token verifies and has not yet expired. Never raises."""
        try:
            claims = self.verify(token)
        except ServiceError:
            return False
        except Exception as exc:
            logger.error("token_validation_error", error=str(exc))
            return False
        return claims.expires_at > self._now()

    def expiry_of(self, token: str) -> datetime:
        return self.verify(token).expires_at
