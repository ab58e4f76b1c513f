"""
Store Crypto — at-rest encryption for cached conversation secrets.

Every cache entry is sealed with a key derived from a versioned master key:
    HKDF(MASTER_KEY_vN, "convo-vault-store-vN") → AES-GCM → [key_id|nonce|payload]

The conversation id is bound as associated data so an entry cannot be
moved under another conversation.

Security Note:
    Never log plaintext or ciphertext values.
"""
import os
import struct
import logging
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..exceptions import AuthenticationFailure, MalformedInput

logger = logging.getLogger("convo_vault.vault")

NONCE_SIZE = 12  # 96-bit nonce
KEY_ID_SIZE = 2  # uint16 big-endian
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16


def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte encryption key using HKDF-SHA256.

    Args:
        seed: Input key material (master key bytes).
        context: Context string for domain separation.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # deterministic derivation per key version
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


def _context(key_id: int) -> str:
    return f"convo-vault-store-v{key_id}"


def encrypt_at_rest(
    plaintext: bytes,
    key_id: int,
    master_key: bytes,
    aad: Optional[bytes] = None,
) -> bytes:
    """Encrypt plaintext for disk storage with embedded key version.

    Format: [key_id 2B uint16 BE][nonce 12B][encrypted_payload + tag]
    """
    derived = derive_key(master_key, _context(key_id))
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(derived).encrypt(nonce, plaintext, aad)
    return struct.pack("!H", key_id) + nonce + ct


def sealed_key_id(ciphertext: bytes) -> int:
    """Return the master key version a sealed entry was written with."""
    if len(ciphertext) < KEY_ID_SIZE:
        raise MalformedInput("sealed entry too short to carry a key id")
    return struct.unpack("!H", ciphertext[:KEY_ID_SIZE])[0]


def decrypt_at_rest(
    ciphertext: bytes,
    master_keys: dict[int, bytes],
    aad: Optional[bytes] = None,
) -> bytes:
    """Decrypt a sealed entry using its embedded key version.

    Raises:
        MalformedInput: If the entry is truncated.
        KeyError: If the entry's key version is not in master_keys.
        AuthenticationFailure: If the entry was tampered with.
    """
    _min = KEY_ID_SIZE + NONCE_SIZE + TAG_SIZE
    if len(ciphertext) < _min:
        raise MalformedInput(
            f"sealed entry too short: {len(ciphertext)} bytes "
            f"(minimum {_min})"
        )
    key_id = sealed_key_id(ciphertext)
    if key_id not in master_keys:
        raise KeyError(
            f"Master key version {key_id} not found in provided keys"
        )
    derived = derive_key(master_keys[key_id], _context(key_id))
    nonce = ciphertext[KEY_ID_SIZE:KEY_ID_SIZE + NONCE_SIZE]
    ct = ciphertext[KEY_ID_SIZE + NONCE_SIZE:]
    try:
        return AESGCM(derived).decrypt(nonce, ct, aad)
    except InvalidTag as err:
        raise AuthenticationFailure(
            f"sealed entry failed authentication (key v{key_id})"
        ) from err
