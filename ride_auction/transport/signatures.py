"""Ed25519 signing for outbound notification payloads."""

from __future__ import annotations

import base64
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .canonical_json import canonical_dumps


class SignatureError(ValueError):
    """Raised when the configured signing key is missing or not ed25519."""


def load_private_key(pem: str) -> Ed25519PrivateKey:
    if not pem:
        raise SignatureError("private key missing")
    key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise SignatureError("private key is not ed25519")
    return key


def sign_payload(payload: Any, private_key_pem: str) -> str:
    """Base64 ed25519 signature over the canonical JSON form of ``payload``."""
    private_key = load_private_key(private_key_pem)
    signature = private_key.sign(canonical_dumps(payload))
    return base64.b64encode(signature).decode("utf-8")
