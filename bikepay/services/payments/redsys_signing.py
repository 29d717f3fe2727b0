"""Order-scoped key derivation and HMAC signatures for the Redsys gateway.

Signature scheme `HMAC_SHA256_V1`:

1. Decode the merchant secret (base64, 24 bytes).
2. Null-pad the diversifier (the 12-digit order id) to a multiple of 8
   bytes and encrypt it once with 3DES-CBC, zero IV, no cipher padding.
   The ciphertext is the order key.
3. HMAC-SHA256 the base64 merchant parameters with the order key and
   base64-encode the digest.

The derivation is the gateway's own contract, not a general-purpose KDF:
adding cipher padding or trimming the ciphertext breaks every signature.
"""

import base64
import binascii
import hashlib
import hmac
from enum import Enum

from Crypto.Cipher import DES3

from bikepay.common.errors import KeyDerivationError
from bikepay.services.payments.redsys_params import PayloadEncoding


SIGNATURE_VERSION = "HMAC_SHA256_V1"
BLOCK_SIZE = 8
SECRET_LENGTH = 24
ZERO_IV = bytes(BLOCK_SIZE)


class KeyDerivationMode(str, Enum):
    """What the order key is diversified with."""

    ORDER = "order"
    MERCHANT_TERMINAL = "merchant_terminal"


def decode_secret(secret_b64: str) -> bytes:
    """Decode the shared merchant secret; either base64 alphabet is accepted."""

    if not isinstance(secret_b64, str) or not secret_b64:
        raise KeyDerivationError("merchant secret is empty")
    try:
        key = base64.b64decode(secret_b64.replace("-", "+").replace("_", "/"), validate=True)
    except (binascii.Error, ValueError):
        raise KeyDerivationError("merchant secret is not valid base64") from None
    if len(key) != SECRET_LENGTH:
        raise KeyDerivationError(f"merchant secret must decode to {SECRET_LENGTH} bytes")
    return key


def derive_order_key(secret_b64: str, diversifier: str) -> bytes:
    """Encrypt the null-padded diversifier with 3DES-CBC and a zero IV."""

    key = decode_secret(secret_b64)
    data = diversifier.encode("utf-8") if isinstance(diversifier, str) else b""
    if not data:
        raise KeyDerivationError("order key diversifier is empty")
    padded = data + b"\0" * (-len(data) % BLOCK_SIZE)
    try:
        cipher = DES3.new(key, DES3.MODE_CBC, iv=ZERO_IV)
    except ValueError:
        # Degenerate keys (K1 == K2 or K2 == K3) are rejected by the cipher.
        raise KeyDerivationError("merchant secret is not a usable 3DES key") from None
    return cipher.encrypt(padded)


def _b64(digest: bytes, encoding: PayloadEncoding) -> str:
    if encoding is PayloadEncoding.URLSAFE:
        return base64.urlsafe_b64encode(digest).decode("ascii")
    return base64.b64encode(digest).decode("ascii")


def compute_signature(order_key: bytes, encoded_payload: str, encoding: PayloadEncoding) -> str:
    digest = hmac.new(order_key, encoded_payload.encode("ascii"), hashlib.sha256).digest()
    return _b64(digest, encoding)


class SignatureEngine:
    """Signs and verifies merchant parameter payloads for one endpoint.

    Outbound requests and inbound notifications may expect different base64
    alphabets, so each endpoint gets its own engine.
    """

    def __init__(
        self,
        secret_b64: str,
        encoding: PayloadEncoding = PayloadEncoding.STANDARD,
        derivation_mode: KeyDerivationMode = KeyDerivationMode.ORDER,
        merchant_code: str | None = None,
        terminal: str | None = None,
    ) -> None:
        self._secret_b64 = secret_b64
        self.encoding = PayloadEncoding(encoding)
        self.derivation_mode = KeyDerivationMode(derivation_mode)
        self.merchant_code = merchant_code
        self.terminal = terminal

    def __repr__(self) -> str:
        return f"SignatureEngine(encoding={self.encoding.value}, derivation_mode={self.derivation_mode.value})"

    def _diversifier(self, order_id: str) -> str:
        if self.derivation_mode is KeyDerivationMode.MERCHANT_TERMINAL:
            if not self.merchant_code or not self.terminal:
                raise KeyDerivationError("merchant code and terminal are required for this derivation")
            return f"{self.merchant_code}{self.terminal}"
        return order_id

    def sign(self, order_id: str, encoded_payload: str) -> str:
        """Return the signature for `encoded_payload`; raises `KeyDerivationError`."""

        order_key = derive_order_key(self._secret_b64, self._diversifier(order_id))
        return compute_signature(order_key, encoded_payload, self.encoding)

    def verify(self, order_id: str, encoded_payload: str, received_signature: str) -> bool:
        """Recompute and compare in constant time. Never raises."""

        if not isinstance(received_signature, str) or not received_signature:
            return False
        if not isinstance(order_id, str) or not isinstance(encoded_payload, str):
            return False
        try:
            expected = self.sign(order_id, encoded_payload).encode("ascii")
            received = received_signature.strip().encode("ascii")
        except (KeyDerivationError, ValueError):
            return False
        return hmac.compare_digest(expected, received)
