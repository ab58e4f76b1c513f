"""
Message Codec — authenticated encryption of message payloads.

Each payload is sealed under the conversation Secret with a fresh random
96-bit nonce:

    envelope = nonce 12B | ciphertext | tag 16B

Security Note:
    Never log plaintext, ciphertext or secret values.
    Nonces are random 96-bit; a nonce is never reused on purpose, and the
    collision probability is negligible under normal usage.
"""
import os
import logging
from typing import Optional

import orjson
from pydantic import ValidationError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from .exceptions import AuthenticationFailure, MalformedEnvelope
from .types import (
    NONCE_SIZE,
    TAG_SIZE,
    MessageBlob,
    MessageEnvelope,
    Secret,
)

logger = logging.getLogger("convo_vault.codec")

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


class MessageCodec:
    """Stateless AEAD codec over a conversation Secret.

    Args:
        cipher_backend: ``"aesgcm"`` (AES-256-GCM) or ``"chacha20"``
            (ChaCha20-Poly1305). Both use 12-byte nonces and 16-byte tags.
    """

    def __init__(self, cipher_backend: str = "aesgcm"):
        try:
            self._cipher_cls = _CIPHERS[cipher_backend.lower()]
        except KeyError:
            raise ValueError(
                f"Unsupported cipher backend: {cipher_backend}"
            ) from None
        self.cipher_backend = cipher_backend.lower()

    def encrypt(
        self,
        plaintext: bytes,
        secret: Secret,
        aad: Optional[bytes] = None,
    ) -> MessageEnvelope:
        """Encrypt ``plaintext`` under ``secret``.

        Args:
            plaintext: Data to encrypt.
            secret: Conversation secret.
            aad: Optional associated data authenticated alongside the payload.

        Returns:
            A MessageEnvelope with a fresh nonce.
        """
        cipher = self._cipher_cls(secret.value)
        nonce = os.urandom(NONCE_SIZE)
        sealed = cipher.encrypt(nonce, plaintext, aad)
        return MessageEnvelope(
            nonce=nonce,
            ciphertext=sealed[:-TAG_SIZE],
            tag=sealed[-TAG_SIZE:],
        )

    def decrypt(
        self,
        envelope: MessageEnvelope,
        secret: Secret,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """Verify and decrypt ``envelope``.

        Raises:
            AuthenticationFailure: On any tampering or when the wrong secret
                (or associated data) is used.
        """
        cipher = self._cipher_cls(secret.value)
        try:
            return cipher.decrypt(
                envelope.nonce, envelope.ciphertext + envelope.tag, aad,
            )
        except InvalidTag as err:
            raise AuthenticationFailure(
                "message authentication failed"
            ) from err

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    def encrypt_to_text(
        self, plaintext: bytes, secret: Secret, aad: Optional[bytes] = None,
    ) -> str:
        return self.encrypt(plaintext, secret, aad).encode()

    def decrypt_text(
        self, data: "str | bytes", secret: Secret, aad: Optional[bytes] = None,
    ) -> bytes:
        return self.decrypt(MessageEnvelope.decode(data), secret, aad)


# ---------------------------------------------------------------------------
# Message blob serialization
# ---------------------------------------------------------------------------

def encode_blob(blob: MessageBlob) -> bytes:
    """Serialize a MessageBlob to JSON bytes for encryption."""
    return orjson.dumps(blob.model_dump(mode="json"))


def decode_blob(data: bytes) -> MessageBlob:
    """Deserialize decrypted JSON bytes back to a MessageBlob.

    Raises:
        MalformedEnvelope: If the payload is not a valid message document.
    """
    try:
        return MessageBlob.model_validate(orjson.loads(data))
    except (orjson.JSONDecodeError, ValidationError) as err:
        raise MalformedEnvelope(f"invalid message payload: {err}") from err
