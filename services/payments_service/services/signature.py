"""Stripe webhook signature verification across several signing secrets.

One public endpoint serves every deployment tier, so an event is checked
against each configured secret in turn. The tier whose secret matches decides
which Stripe credentials follow-up API calls use.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from libs.common.config import StripeEnvironment
from libs.common.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_SCHEME = "v1"


class SignatureVerificationError(Exception):
    """The event could not be proven to come from Stripe."""


@dataclass(frozen=True)
class ParsedSignatureHeader:
    timestamp: str
    signatures: tuple[str, ...]


def parse_signature_header(header: Optional[str]) -> ParsedSignatureHeader:
    """Split ``t=...,v1=...,v1=...`` into its timestamp and v1 hashes.

    Raises:
        SignatureVerificationError: header missing, or no timestamp / v1 part.
    """
    if not header:
        raise SignatureVerificationError("Missing Stripe-Signature header")

    timestamp = ""
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)

    if not timestamp or not signatures:
        raise SignatureVerificationError("Malformed Stripe-Signature header")
    return ParsedSignatureHeader(timestamp=timestamp, signatures=tuple(signatures))


def compute_signature(raw_body: bytes, timestamp: str, secret: str) -> str:
    """HMAC-SHA256 hex digest of ``"{timestamp}.{raw_body}"``."""
    signed_payload = timestamp.encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    header: Optional[str],
    environments: Sequence[StripeEnvironment],
    *,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> StripeEnvironment:
    """Return the first environment whose webhook secret signed this body.

    Every candidate secret is tried against every v1 hash in the header using a
    constant-time comparison.

    Raises:
        SignatureVerificationError: malformed header, stale timestamp, or no
            secret matched.
    """
    parsed = parse_signature_header(header)

    if tolerance_seconds > 0:
        try:
            signed_at = int(parsed.timestamp)
        except ValueError as exc:
            raise SignatureVerificationError("Non-numeric signature timestamp") from exc
        current = int(now if now is not None else time.time())
        if abs(current - signed_at) > tolerance_seconds:
            logger.warning(
                "Stripe signature timestamp outside tolerance",
                extra={
                    "extra_fields": {
                        "age_seconds": current - signed_at,
                        "tolerance_seconds": tolerance_seconds,
                    }
                },
            )
            raise SignatureVerificationError("Signature timestamp outside tolerance")

    for environment in environments:
        expected = compute_signature(raw_body, parsed.timestamp, environment.webhook_secret)
        for candidate in parsed.signatures:
            if hmac.compare_digest(expected, candidate):
                logger.info(
                    "Stripe signature verified for environment %s", environment.name
                )
                return environment

    logger.warning(
        "Stripe signature did not match any of %d configured secrets",
        len(environments),
    )
    raise SignatureVerificationError("No signing secret matched")
