from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from tokenkeep.logging import get_logger
from tokenkeep.service.errors import InvalidTokenError
from tokenkeep.storage.models import utcnow

logger = get_logger(__name__)

ACCESS_PURPOSE = "access_token"
VERIFICATION_PURPOSE = "verification_token"


class SessionIssuer:
    """Signs and checks HS256 claims ``{sub, purpose, iss, iat, exp, jti}``."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "tokenkeep",
        default_ttl: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.default_ttl = default_ttl
        self._clock = clock or utcnow

    def issue(
        self, subject: str, purpose: str, ttl: Optional[timedelta] = None
    ) -> str:
        now = self._clock()
        lifetime = ttl or self.default_ttl
        payload = {
            "sub": subject,
            "purpose": purpose,
            "iss": self.issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + lifetime).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def parse(self, token: str, expected_purpose: str) -> str:
        """Return the subject of a valid claim or raise ``InvalidTokenError``."""
        if not token:
            raise InvalidTokenError()
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError()
        if payload.get("iss") != self.issuer:
            logger.warning("claim_issuer_mismatch")
            raise InvalidTokenError()
        if payload.get("purpose") != expected_purpose:
            logger.warning(
                "claim_purpose_mismatch",
                expected=expected_purpose,
                purpose=payload.get("purpose"),
            )
            raise InvalidTokenError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        if exp_ts <= self._clock().timestamp():
            raise InvalidTokenError("token expired")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError()
        return subject

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload
