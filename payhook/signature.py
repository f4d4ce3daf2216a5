import hashlib
import hmac
from typing import Protocol

DEFAULT_SIGNATURE_HEADER = "X-Signature"


class SignatureVerifier(Protocol):
    def verify(self, raw_body: bytes, signature: str | None, secret: str) -> bool:
        ...


def compute_signature(secret: str, body: bytes) -> str:
    """Compute the hex HMAC-SHA256 signature of the raw request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class HmacSignatureVerifier:
    """
    Verify a hex HMAC-SHA256 signature over the exact bytes received.

    Accepts either the bare hex digest or the ``sha256=<hex>`` form some
    providers send.
    """

    prefix = "sha256="

    def verify(self, raw_body: bytes, signature: str | None, secret: str) -> bool:
        if not signature or not secret:
            return False
        candidate = signature.strip()
        if candidate.startswith(self.prefix):
            candidate = candidate[len(self.prefix):]
        expected = compute_signature(secret, raw_body)
        return hmac.compare_digest(expected, candidate)
