"""HMAC signatures for webhook bodies (``X-Signature: sha256=<hex>``)."""

from __future__ import annotations

import hashlib
import hmac
from typing import Mapping, Optional, Union

from .clock import from_iso
from .constants import WEBHOOK_SIGNATURE_HEADER, WEBHOOK_TIMESTAMP_HEADER
from .errors import Unauthorized


class WebhookSigner:
    """Signs and verifies webhook payloads."""

    def __init__(self, algorithm: str = "sha256") -> None:
        self._algorithm = algorithm

    def sign(self, body: Union[str, bytes], secret: str) -> str:
        """Create the signature header value for ``body``."""
        if isinstance(body, str):
            body = body.encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), body, getattr(hashlib, self._algorithm)).hexdigest()
        return f"{self._algorithm}={digest}"

    def verify(self, body: Union[str, bytes], secret: str, signature: str) -> bool:
        return hmac.compare_digest(self.sign(body, secret), signature or "")


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def parse_timestamp(raw: str) -> int:
    """Accept epoch seconds, epoch milliseconds or ISO-8601."""
    text = raw.strip()
    if text.lstrip("-").isdigit():
        value = int(text)
        # anything below 1e11 is seconds
        return value * 1000 if abs(value) < 100_000_000_000 else value
    return from_iso(text)


def verify_request(
    body: Union[str, bytes],
    headers: Mapping[str, str],
    secret: str,
    now_ms: int,
    skew_ms: int = 300_000,
    signer: Optional[WebhookSigner] = None,
) -> None:
    """Raise ``Unauthorized`` unless the body carries a valid, fresh signature."""

    signer = signer or WebhookSigner()
    signature = _header(headers, WEBHOOK_SIGNATURE_HEADER)
    if not signature:
        raise Unauthorized(f"Missing {WEBHOOK_SIGNATURE_HEADER} header")
    if not signer.verify(body, secret, signature):
        raise Unauthorized("Invalid webhook signature")
    claimed = _header(headers, WEBHOOK_TIMESTAMP_HEADER)
    if claimed is not None:
        try:
            claimed_ms = parse_timestamp(claimed)
        except ValueError as exc:
            raise Unauthorized(f"Malformed {WEBHOOK_TIMESTAMP_HEADER} header") from exc
        if abs(now_ms - claimed_ms) > skew_ms:
            raise Unauthorized("Webhook timestamp outside the allowed clock skew")
