"""
Key Escrow — seal conversation secrets under an identity-based encryption
capability and recover them with a session credential.

The identity a secret is sealed under is ``namespace | conversation id``;
decryption requires ``threshold`` of the capability's key servers to accept
the presented credential.

Security Note:
    Never log secrets, escrow ciphertexts or backup keys.
"""
import asyncio
import logging
from typing import Any, Awaitable, Mapping, Optional, Protocol, TypeVar

from .conf import KeyManagerConfig
from .credentials import SessionCredentialIssuer
from .exceptions import EscrowUnavailable, MalformedEscrow
from .types import (
    SECRET_SIZE,
    ConversationId,
    EscrowedSecret,
    Secret,
    SessionCredential,
)

logger = logging.getLogger("convo_vault.escrow")

T = TypeVar("T")


class IdentityBasedEncryption(Protocol):
    """External threshold IBE capability (key-server network client)."""

    async def encrypt(
        self,
        identity: bytes,
        threshold: int,
        plaintext: bytes,
        policy: Optional[Mapping[str, Any]] = None,
    ) -> tuple[bytes, Optional[bytes]]:
        """Return ``(ciphertext, backup_key)``; backup_key may be None."""
        ...

    async def decrypt(
        self,
        identity: bytes,
        credential: SessionCredential,
        ciphertext: bytes,
    ) -> bytes:
        """Return the plaintext or raise ``AccessDenied``."""
        ...


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """Await ``awaitable`` under ``timeout``, mapping transport errors.

    Raises:
        EscrowUnavailable: On timeout or connection/OS-level failure.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as err:
        raise EscrowUnavailable(f"{what} timed out after {timeout}s") from err
    except (ConnectionError, OSError) as err:
        raise EscrowUnavailable(f"{what} failed: {err}") from err


class KeyEscrowService:
    """Adapts an IBE capability to escrow and recover Secrets.

    Args:
        ibe: Identity-based encryption capability.
        issuer: Used to verify credentials before any decrypt attempt.
        config: Namespace, default threshold, key-server count and timeout.
    """

    def __init__(
        self,
        ibe: IdentityBasedEncryption,
        issuer: SessionCredentialIssuer,
        config: Optional[KeyManagerConfig] = None,
    ):
        self._ibe = ibe
        self._issuer = issuer
        self._config = config or KeyManagerConfig()

    def identity_for(self, conversation_id: ConversationId) -> bytes:
        return self._config.namespace.encode("utf-8") + conversation_id.value

    async def escrow(
        self,
        secret: Secret,
        conversation_id: ConversationId,
        threshold: Optional[int] = None,
        participant_policy: Optional[Mapping[str, Any]] = None,
    ) -> EscrowedSecret:
        """Seal ``secret`` under the conversation identity.

        Raises:
            ValueError: If threshold is outside ``1..key_servers``.
            EscrowUnavailable: If the capability cannot be reached.
        """
        threshold = self._config.threshold if threshold is None else threshold
        if not 1 <= threshold <= self._config.key_servers:
            raise ValueError(
                f"threshold must be between 1 and {self._config.key_servers}, "
                f"got {threshold}"
            )
        ciphertext, backup_key = await call_with_timeout(
            self._ibe.encrypt(
                self.identity_for(conversation_id),
                threshold,
                secret.value,
                policy=participant_policy,
            ),
            self._config.call_timeout,
            "escrow encrypt",
        )
        if not ciphertext:
            raise EscrowUnavailable("escrow capability returned an empty ciphertext")
        logger.info(
            "Secret escrowed: conversation=%s threshold=%d/%d",
            conversation_id, threshold, self._config.key_servers,
        )
        return EscrowedSecret(
            conversation_id=conversation_id,
            threshold=threshold,
            ciphertext=ciphertext,
            backup_key=backup_key,
        )

    async def recover(
        self,
        escrowed: EscrowedSecret,
        credential: SessionCredential,
    ) -> Secret:
        """Decrypt an escrowed secret with ``credential``.

        Raises:
            Expired: If the credential has lapsed, whatever its signature.
            AccessDenied: If the credential is invalid, bound to another
                conversation, or rejected by the capability's policy.
            EscrowUnavailable: On timeout or transport failure.
            MalformedEscrow: If the ciphertext cannot be parsed or does not
                hold a 32-byte secret.
        """
        conversation_id = escrowed.conversation_id
        self._issuer.check(credential, conversation_id)
        try:
            plaintext = await call_with_timeout(
                self._ibe.decrypt(
                    self.identity_for(conversation_id),
                    credential,
                    escrowed.ciphertext,
                ),
                self._config.call_timeout,
                "escrow decrypt",
            )
        except ValueError as err:
            raise MalformedEscrow(
                f"escrow ciphertext for {conversation_id} is unreadable: {err}"
            ) from err
        if len(plaintext) != SECRET_SIZE:
            raise MalformedEscrow(
                f"escrow for {conversation_id} decrypted to {len(plaintext)} "
                f"bytes, expected {SECRET_SIZE}"
            )
        logger.info("Secret recovered from escrow: conversation=%s", conversation_id)
        return Secret(value=plaintext)

    @staticmethod
    def parse(raw: bytes) -> EscrowedSecret:
        """Parse published escrow bytes, raising ``MalformedEscrow``."""
        return EscrowedSecret.from_bytes(raw)
