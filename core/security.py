from __future__ import annotations

import hashlib
import hmac

from core.errors import InvalidSignature


def sign_payload(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def verify_signature(raw: bytes, signature: str | None, secret: str) -> None:
    if not signature:
        raise InvalidSignature("missing signature")
    expected = sign_payload(raw, secret)
    candidate = signature.removeprefix("sha256=")
    if not hmac.compare_digest(expected, candidate):
        raise InvalidSignature("invalid signature")
