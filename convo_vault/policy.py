"""
Policy store — durable slot holding each conversation's escrowed secret.

The slot is written with compare-and-publish: a publish succeeds only while
the slot is empty. Any strongly-consistent key-value store with
compare-and-swap satisfies the ``PolicyStore`` protocol; ``MemoryPolicyStore``
is the in-process reference used by tests and single-node setups.
"""
import asyncio
import logging
from typing import Optional, Protocol

from .types import ConversationId, EscrowedSecret, PublishResult

logger = logging.getLogger("convo_vault.policy")


class PolicyStore(Protocol):

    async def get_escrowed_secret(
        self, conversation_id: ConversationId,
    ) -> Optional[EscrowedSecret]:
        ...

    async def compare_and_publish(
        self, conversation_id: ConversationId, escrowed: EscrowedSecret,
    ) -> PublishResult:
        ...


class MemoryPolicyStore:
    """In-process PolicyStore keeping the escrow wire bytes per conversation.

    Reads re-parse the stored bytes, so a corrupted slot surfaces as
    ``MalformedEscrow`` just like a remote store would.
    """

    def __init__(self):
        self._slots: dict[str, bytes] = {}
        self._lock = asyncio.Lock()
        self.reads = 0
        self.publishes = 0

    async def get_escrowed_secret(
        self, conversation_id: ConversationId,
    ) -> Optional[EscrowedSecret]:
        self.reads += 1
        async with self._lock:
            raw = self._slots.get(conversation_id.hex())
        if raw is None:
            return None
        return EscrowedSecret.from_bytes(raw)

    async def compare_and_publish(
        self, conversation_id: ConversationId, escrowed: EscrowedSecret,
    ) -> PublishResult:
        if escrowed.conversation_id != conversation_id:
            raise ValueError(
                f"escrow for {escrowed.conversation_id} cannot be published "
                f"under {conversation_id}"
            )
        self.publishes += 1
        key = conversation_id.hex()
        async with self._lock:
            if key in self._slots:
                logger.debug("Publish rejected, slot taken: conversation=%s", key)
                return PublishResult.ALREADY_EXISTS
            self._slots[key] = escrowed.to_bytes()
        logger.debug("Escrow published: conversation=%s", key)
        return PublishResult.OK

    def put_raw(self, conversation_id: ConversationId, raw: bytes) -> None:
        """Overwrite a slot with arbitrary bytes (simulates a foreign writer)."""
        self._slots[conversation_id.hex()] = raw

    def __contains__(self, conversation_id: object) -> bool:
        return isinstance(conversation_id, ConversationId) and (
            conversation_id.hex() in self._slots
        )
