from __future__ import annotations

import hashlib
import hmac
from typing import Mapping, Optional

SIGNATURE_HEADERS = ("x-sms-signature", "x-provider-signature", "x-webhook-signature")


class SignatureVerificationError(Exception):
    pass


def configured_secrets(raw: str) -> list[str]:
    # Comma-separated so a provider secret can be rotated without downtime.
    return [item.strip() for item in raw.split(",") if item.strip()]


def _presented_signature(headers: Mapping[str, str]) -> Optional[str]:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value and value.strip():
            presented = value.strip()
            if presented.lower().startswith("sha256="):
                presented = presented.split("=", 1)[1]
            return presented.lower()
    return None


def verify_sms_signature(headers: Mapping[str, str], raw_body: bytes, secret: str) -> None:
    """Reject the delivery unless its HMAC-SHA256 matches one configured secret.

    An empty secret disables verification.
    """
    secrets = configured_secrets(secret)
    if not secrets:
        return
    presented = _presented_signature(headers)
    if not presented:
        raise SignatureVerificationError("missing sms provider signature header")
    for candidate in secrets:
        expected = hmac.new(candidate.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        if hmac.compare_digest(expected, presented):
            return
    raise SignatureVerificationError("invalid sms provider signature")
