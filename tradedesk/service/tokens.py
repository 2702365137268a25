from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Callable, Optional

from tradedesk.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TOKEN_TTL = timedelta(days=7)
_HEADER = {"alg": "HS256", "typ": "JWT"}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(segment: str) -> Optional[dict[str, Any]]:
    try:
        value = json.loads(_decode_segment(segment))
    except (ValueError, UnicodeDecodeError):
        return None
    return value if isinstance(value, dict) else None


def peek_claims(token: str) -> Optional[dict[str, Any]]:
    """Read a token's payload without checking signature or expiry.

    Only for display logic such as expiry countdowns; never for access decisions.
    """
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    return _json_segment(parts[1])


class TokenCodec:
    """Three-segment ``header.payload.signature`` tokens signed with HMAC-SHA256.

    The payload carries the caller's claims (``userId``, ``sessionId``) plus
    ``iat`` and ``exp`` in epoch seconds.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.ttl = ttl
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def encode(self, claims: dict[str, Any], *, ttl: Optional[timedelta] = None) -> str:
        issued_at = int(self._clock())
        lifetime = int((ttl or self.ttl).total_seconds())
        payload = {**claims, "iat": issued_at, "exp": issued_at + lifetime}
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a valid token, or ``None``. Never raises."""
        if not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        header_b64, payload_b64, sig_b64 = parts

        header = _json_segment(header_b64)
        if not header or header.get("alg") != _HEADER["alg"]:
            logger.warning("token_header_invalid")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode("utf-8", "replace")):
            return None

        payload = _json_segment(payload_b64)
        if payload is None:
            logger.warning("token_payload_decode_failed")
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        if exp < self._clock():
            return None
        return payload
