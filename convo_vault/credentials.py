"""
Session credentials — short-lived signed proofs for escrow decryption.

A credential binds ``(identity, conversation, namespace, expiry)`` under an
Ed25519 signature produced by the holder's signing capability. Binding the
conversation into the signed payload stops a credential being replayed
against another conversation.

Identities are wallet-style addresses derived from the signer's public key:
    identity = "0x" + blake2b-256(0x00 | ed25519 public key)
"""
import time
import hashlib
import logging
from typing import Callable, Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .conf import KeyManagerConfig
from .exceptions import AccessDenied, Expired
from .types import ConversationId, CredentialStatus, SessionCredential

logger = logging.getLogger("convo_vault.credentials")

_ED25519_FLAG = b"\x00"


def derive_identity(public_key: bytes) -> str:
    """Derive the address-style identity for an Ed25519 public key."""
    digest = hashlib.blake2b(_ED25519_FLAG + public_key, digest_size=32)
    return "0x" + digest.hexdigest()


class Signer(Protocol):
    """External signing capability (wallet, HSM, local key)."""

    @property
    def identity(self) -> str:
        ...

    @property
    def public_key(self) -> bytes:
        ...

    async def sign(self, message: bytes) -> bytes:
        ...


class Ed25519Signer:
    """Local Ed25519 signer."""

    def __init__(self, private_key: Optional[Ed25519PrivateKey] = None):
        self._private_key = private_key or Ed25519PrivateKey.generate()
        self._public_key = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._identity = derive_identity(self._public_key)

    @classmethod
    def from_seed(cls, seed: bytes) -> "Ed25519Signer":
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def public_key(self) -> bytes:
        return self._public_key

    async def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)


class SessionCredentialIssuer:
    """Issues and verifies SessionCredentials for one signer.

    Args:
        signer: Signing capability proving control of the identity.
        config: Namespace and TTL settings.
        clock: Returns the current UNIX time; injectable for tests.
    """

    def __init__(
        self,
        signer: Signer,
        config: Optional[KeyManagerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._signer = signer
        self._config = config or KeyManagerConfig()
        self._clock = clock

    @property
    def identity(self) -> str:
        return self._signer.identity

    async def issue(
        self,
        identity: str,
        conversation_id: ConversationId,
        ttl: Optional[float] = None,
    ) -> SessionCredential:
        """Issue a credential valid for ``ttl`` seconds from now.

        Raises:
            AccessDenied: If the signer does not control ``identity``.
            ValueError: If ``ttl`` is not positive or exceeds the maximum.
        """
        ttl = self._config.credential_ttl if ttl is None else ttl
        if ttl <= 0 or ttl > self._config.max_credential_ttl:
            raise ValueError(
                f"credential ttl must be in (0, {self._config.max_credential_ttl}], "
                f"got {ttl}"
            )
        if identity != self._signer.identity:
            raise AccessDenied(
                f"signer does not control identity {identity}"
            )
        now = self._clock()
        unsigned = SessionCredential(
            identity=identity,
            conversation_id=conversation_id,
            namespace=self._config.namespace,
            issued_at=now,
            expiry=now + ttl,
            public_key=self._signer.public_key,
        )
        signature = await self._signer.sign(unsigned.signing_payload())
        logger.debug(
            "Issued credential: identity=%s conversation=%s ttl=%s",
            identity, conversation_id, ttl,
        )
        return unsigned.model_copy(update={"signature": signature})

    def verify(self, credential: SessionCredential) -> CredentialStatus:
        """Check expiry, identity binding and signature. No side effects."""
        if credential.is_expired(self._clock()):
            return CredentialStatus.EXPIRED
        if credential.namespace != self._config.namespace:
            return CredentialStatus.INVALID_SIGNATURE
        if derive_identity(credential.public_key) != credential.identity:
            return CredentialStatus.INVALID_SIGNATURE
        try:
            public_key = Ed25519PublicKey.from_public_bytes(credential.public_key)
            public_key.verify(credential.signature, credential.signing_payload())
        except (InvalidSignature, ValueError):
            return CredentialStatus.INVALID_SIGNATURE
        return CredentialStatus.OK

    def check(
        self,
        credential: SessionCredential,
        conversation_id: Optional[ConversationId] = None,
    ) -> None:
        """Raise unless ``credential`` is valid (for ``conversation_id``).

        Raises:
            Expired: If the credential has lapsed.
            AccessDenied: On a bad signature or a different conversation.
        """
        status = self.verify(credential)
        if status is CredentialStatus.EXPIRED:
            raise Expired(
                f"credential for {credential.conversation_id} expired"
            )
        if status is CredentialStatus.INVALID_SIGNATURE:
            raise AccessDenied("credential signature is invalid")
        if conversation_id is not None and credential.conversation_id != conversation_id:
            raise AccessDenied(
                f"credential is bound to {credential.conversation_id}, "
                f"not {conversation_id}"
            )
