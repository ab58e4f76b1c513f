"""
Convo Vault data model.

Immutable value types shared by the codec, the escrow layer and the key
manager. Raw key material is excluded from every ``repr``.
"""
import os
import hmac
import base64
import struct
import binascii
from enum import Enum
from typing import Literal, Optional
from datetime import datetime, timezone

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import MalformedEnvelope, MalformedEscrow

CONVERSATION_ID_SIZE = 32
SECRET_SIZE = 32  # AES-256
NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit tag

ESCROW_MAGIC = b"CVE"
ESCROW_VERSION = 1
_ESCROW_HEADER = struct.Struct("!3sBB32sH")


class KeyState(str, Enum):
    """Resolution state of a conversation within this process."""
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    READY = "ready"
    FAILED = "failed"


class CredentialStatus(str, Enum):
    OK = "ok"
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"


class PublishResult(str, Enum):
    OK = "ok"
    ALREADY_EXISTS = "already_exists"


class ConversationId(BaseModel):
    """Opaque 32-byte conversation identifier."""

    model_config = ConfigDict(frozen=True)

    value: bytes

    @field_validator("value")
    @classmethod
    def validate_length(cls, v: bytes) -> bytes:
        if len(v) != CONVERSATION_ID_SIZE:
            raise ValueError(
                f"conversation id must be {CONVERSATION_ID_SIZE} bytes, "
                f"got {len(v)}"
            )
        return v

    @classmethod
    def from_hex(cls, text: str) -> "ConversationId":
        """Build from a hex string, with or without a ``0x`` prefix."""
        if text.startswith(("0x", "0X")):
            text = text[2:]
        return cls(value=bytes.fromhex(text))

    @classmethod
    def coerce(cls, value: "ConversationId | bytes | str") -> "ConversationId":
        if isinstance(value, ConversationId):
            return value
        if isinstance(value, str):
            return cls.from_hex(value)
        return cls(value=bytes(value))

    def hex(self) -> str:
        return "0x" + self.value.hex()

    def __str__(self) -> str:
        return self.hex()


class Secret(BaseModel):
    """Symmetric conversation secret (32 bytes)."""

    model_config = ConfigDict(frozen=True)

    value: bytes = Field(repr=False)

    @field_validator("value")
    @classmethod
    def validate_length(cls, v: bytes) -> bytes:
        if len(v) != SECRET_SIZE:
            raise ValueError(
                f"secret must be {SECRET_SIZE} bytes, got {len(v)}"
            )
        return v

    @classmethod
    def generate(cls) -> "Secret":
        return cls(value=os.urandom(SECRET_SIZE))

    @classmethod
    def from_base64(cls, text: str) -> "Secret":
        try:
            raw = base64.b64decode(text, validate=True)
        except binascii.Error as err:
            raise ValueError(f"secret is not valid base64: {err}") from err
        return cls(value=raw)

    def to_base64(self) -> str:
        return base64.b64encode(self.value).decode("ascii")

    def matches(self, other: "Secret") -> bool:
        """Constant-time comparison of the key material."""
        return hmac.compare_digest(self.value, other.value)


class EscrowedSecret(BaseModel):
    """A Secret sealed under a conversation identity, ready for publication.

    Wire format::

        "CVE" | version u8 | threshold u8 | conversation id 32B
              | backup_key_len u16 | backup_key | ibe ciphertext
    """

    model_config = ConfigDict(frozen=True)

    conversation_id: ConversationId
    threshold: int = Field(ge=1, le=255)
    ciphertext: bytes = Field(repr=False)
    backup_key: Optional[bytes] = Field(default=None, repr=False)

    def to_bytes(self) -> bytes:
        backup = self.backup_key or b""
        header = _ESCROW_HEADER.pack(
            ESCROW_MAGIC,
            ESCROW_VERSION,
            self.threshold,
            self.conversation_id.value,
            len(backup),
        )
        return header + backup + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> "EscrowedSecret":
        """Parse the wire form.

        Raises:
            MalformedEscrow: If the bytes are truncated or not an escrow blob.
        """
        if len(data) < _ESCROW_HEADER.size + 1:
            raise MalformedEscrow(
                f"escrowed secret too short: {len(data)} bytes "
                f"(minimum {_ESCROW_HEADER.size + 1})"
            )
        magic, version, threshold, conv, backup_len = _ESCROW_HEADER.unpack_from(data)
        if magic != ESCROW_MAGIC:
            raise MalformedEscrow("escrowed secret has an unknown magic prefix")
        if version != ESCROW_VERSION:
            raise MalformedEscrow(f"unsupported escrow version {version}")
        if threshold < 1:
            raise MalformedEscrow("escrow threshold must be at least 1")
        offset = _ESCROW_HEADER.size
        if len(data) < offset + backup_len + 1:
            raise MalformedEscrow("escrowed secret truncated")
        backup = data[offset:offset + backup_len] or None
        ciphertext = data[offset + backup_len:]
        return cls(
            conversation_id=ConversationId(value=conv),
            threshold=threshold,
            ciphertext=ciphertext,
            backup_key=backup,
        )


class SessionCredential(BaseModel):
    """Short-lived signed proof binding an identity to one conversation."""

    model_config = ConfigDict(frozen=True)

    identity: str
    conversation_id: ConversationId
    namespace: str
    issued_at: float
    expiry: float
    public_key: bytes
    signature: bytes = Field(default=b"", repr=False)

    def signing_payload(self) -> bytes:
        """Canonical bytes covered by the signature."""
        return orjson.dumps(
            {
                "identity": self.identity,
                "conversation_id": self.conversation_id.hex(),
                "namespace": self.namespace,
                "issued_at": self.issued_at,
                "expiry": self.expiry,
                "public_key": self.public_key.hex(),
            },
            option=orjson.OPT_SORT_KEYS,
        )

    def is_expired(self, now: float) -> bool:
        return now >= self.expiry


class MessageEnvelope(BaseModel):
    """Transport form of one encrypted payload: nonce, ciphertext and tag."""

    model_config = ConfigDict(frozen=True)

    nonce: bytes
    ciphertext: bytes
    tag: bytes

    @field_validator("nonce")
    @classmethod
    def validate_nonce(cls, v: bytes) -> bytes:
        if len(v) != NONCE_SIZE:
            raise ValueError(f"nonce must be {NONCE_SIZE} bytes, got {len(v)}")
        return v

    @field_validator("tag")
    @classmethod
    def validate_tag(cls, v: bytes) -> bytes:
        if len(v) != TAG_SIZE:
            raise ValueError(f"tag must be {TAG_SIZE} bytes, got {len(v)}")
        return v

    def to_bytes(self) -> bytes:
        return self.nonce + self.ciphertext + self.tag

    def encode(self) -> str:
        """Return base64(nonce | ciphertext | tag)."""
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "MessageEnvelope":
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise MalformedEnvelope(
                f"envelope too short: {len(raw)} bytes "
                f"(minimum {NONCE_SIZE + TAG_SIZE})"
            )
        return cls(
            nonce=raw[:NONCE_SIZE],
            ciphertext=raw[NONCE_SIZE:-TAG_SIZE],
            tag=raw[-TAG_SIZE:],
        )

    @classmethod
    def decode(cls, data: "str | bytes") -> "MessageEnvelope":
        """Parse the base64 transport encoding.

        Raises:
            MalformedEnvelope: If the input is not base64 or is too short.
        """
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as err:
            raise MalformedEnvelope(f"envelope is not valid base64: {err}") from err
        return cls.from_bytes(raw)


class MessageBlob(BaseModel):
    """Chat message document encrypted into a single envelope."""

    model_config = ConfigDict(frozen=True)

    file_type: Literal["text", "image", "file"] = "text"
    file: str
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
