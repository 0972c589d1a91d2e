"""Controller handshake credential validation.

A controller proves itself with a token of the form ``<device-id>-<unix-seconds>``
and the hex HMAC-SHA256 of that token under the shared secret.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_MAX_DRIFT = 300

_TOKEN_RE = re.compile(r"(?P<device_id>.+)-(?P<issued_at>[0-9]+)")


class RejectReason(Enum):
    MALFORMED_TOKEN = "MalformedToken"
    SIGNATURE_MISMATCH = "SignatureMismatch"
    EXPIRED_TIMESTAMP = "ExpiredTimestamp"


@dataclass(frozen=True)
class Accepted:
    device_id: str
    issued_at: int


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason


ValidationResult = Accepted | Rejected


def sign_token(secret: str, token: str) -> str:
    """Return the hex HMAC-SHA256 of *token* under *secret*."""
    return hmac.new(
        secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256,
    ).hexdigest()


def parse_token(token: str) -> tuple[str, int] | None:
    """Split a token into ``(device_id, issued_at)``, or None if malformed."""
    match = _TOKEN_RE.fullmatch(token)
    if not match:
        return None
    return match.group("device_id"), int(match.group("issued_at"))


class CredentialValidator:
    """Decides authenticity and freshness of a controller handshake."""

    def __init__(self, secret: str, max_drift: int = DEFAULT_MAX_DRIFT) -> None:
        if not secret:
            raise ValueError("HMAC secret must not be empty")
        self._secret = secret
        self._max_drift = max_drift

    def validate(self, token: str, signature: str, now: float) -> ValidationResult:
        parsed = parse_token(token)
        if parsed is None:
            logger.debug("Token format invalid: %r", token[:64])
            return Rejected(RejectReason.MALFORMED_TOKEN)
        device_id, issued_at = parsed

        # Freshness first: a stale token is rejected whatever its signature.
        drift = abs(int(now) - issued_at)
        if drift >= self._max_drift:
            logger.debug(
                "Timestamp drift too large for %s (%ds). Check controller NTP sync.",
                device_id, drift,
            )
            return Rejected(RejectReason.EXPIRED_TIMESTAMP)

        expected = sign_token(self._secret, token)
        logger.debug(
            "HMAC check for %s: received=%s..., expected=%s...",
            device_id, signature[:16], expected[:16],
        )
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            return Rejected(RejectReason.SIGNATURE_MISMATCH)

        return Accepted(device_id=device_id, issued_at=issued_at)
