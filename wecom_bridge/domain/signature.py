from __future__ import annotations

import hashlib
import hmac


def compute_signature(token: str, timestamp: str, nonce: str, cipher_text: str) -> str:
    parts = sorted([token, timestamp, nonce, cipher_text])
    return hashlib.sha1("".join(parts).encode("utf-8")).hexdigest()


def verify_signature(
    token: str,
    timestamp: str,
    nonce: str,
    cipher_text: str,
    signature: str,
) -> bool:
    expected = compute_signature(token, timestamp, nonce, cipher_text)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
