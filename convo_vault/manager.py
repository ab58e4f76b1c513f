"""
ConversationKeyManager — one authoritative secret per conversation.

Public API:
- ``resolve_conversation_key(conversation_id)`` — cache → escrow recover →
  generate + compare-and-publish
- ``encrypt_message`` / ``decrypt_message`` — AEAD over the resolved secret
- ``send_message`` / ``fetch_message`` — the same, through a blob transport
- ``state`` / ``last_error`` / ``cancel`` / ``forget`` — lifecycle control

Resolution per conversation::

    UNRESOLVED → RESOLVING → READY
                           → FAILED (retried only when the caller asks again)

Secret creation is not mutually exclusive across processes. Two devices may
both generate a secret; the policy store's compare-and-publish lets exactly
one win and the loser recovers the winner's secret through escrow. Within a
process, concurrent resolutions of the same conversation share one task.

Security Note:
    Never log secrets or plaintext. Only conversation ids, states and attempt
    counts are logged.
"""
import asyncio
import logging
import functools
from collections import defaultdict
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, TypeVar, Union

from .codec import MessageCodec, decode_blob, encode_blob
from .conf import KeyManagerConfig
from .credentials import SessionCredentialIssuer, Signer
from .escrow import IdentityBasedEncryption, KeyEscrowService, call_with_timeout
from .exceptions import EscrowUnavailable, Expired, MalformedEscrow
from .policy import PolicyStore
from .types import (
    ConversationId,
    EscrowedSecret,
    KeyState,
    MessageBlob,
    MessageEnvelope,
    PublishResult,
    Secret,
    SessionCredential,
)
from .vault import MemorySecretStore, SecretStore

logger = logging.getLogger("convo_vault.manager")

T = TypeVar("T")

ConversationRef = Union[ConversationId, bytes, str]


class BlobTransport(Protocol):
    """Content-addressed byte store for encrypted message envelopes."""

    async def put(self, data: bytes) -> str:
        ...

    async def get(self, blob_id: str) -> bytes:
        ...


class ConversationKeyManager:
    """Resolves, caches and uses conversation secrets.

    Args:
        store: Local secret cache; the only shared mutable resource.
        policy_store: Holds the authoritative escrowed secret per conversation.
        escrow: Seals and recovers secrets through the IBE capability.
        issuer: Issues credentials for the local identity.
        codec: Message AEAD codec.
        config: Timeouts and retry policy.
        blobs: Optional transport used by ``send_message``/``fetch_message``.
        participant_policy: Opaque access policy forwarded on escrow.
        sleep: Awaitable sleep used between retries; injectable for tests.
    """

    def __init__(
        self,
        store: SecretStore,
        policy_store: PolicyStore,
        escrow: KeyEscrowService,
        issuer: SessionCredentialIssuer,
        codec: Optional[MessageCodec] = None,
        config: Optional[KeyManagerConfig] = None,
        blobs: Optional[BlobTransport] = None,
        participant_policy: Optional[Mapping[str, Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._config = config or KeyManagerConfig()
        self._store = store
        self._policy = policy_store
        self._escrow = escrow
        self._issuer = issuer
        self._codec = codec or MessageCodec(self._config.cipher_backend)
        self._blobs = blobs
        self._participant_policy = participant_policy
        self._sleep = sleep
        self._states: dict[str, KeyState] = {}
        self._errors: dict[str, BaseException] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._waiters: dict[str, int] = defaultdict(int)

    @classmethod
    def create(
        cls,
        signer: Signer,
        ibe: IdentityBasedEncryption,
        policy_store: PolicyStore,
        store: Optional[SecretStore] = None,
        config: Optional[KeyManagerConfig] = None,
        blobs: Optional[BlobTransport] = None,
        **kwargs: Any,
    ) -> "ConversationKeyManager":
        """Wire a manager from its external capabilities."""
        config = config or KeyManagerConfig()
        issuer = SessionCredentialIssuer(signer, config)
        return cls(
            store=store if store is not None else MemorySecretStore(),
            policy_store=policy_store,
            escrow=KeyEscrowService(ibe, issuer, config),
            issuer=issuer,
            codec=MessageCodec(config.cipher_backend),
            config=config,
            blobs=blobs,
            **kwargs,
        )

    @property
    def store(self) -> SecretStore:
        return self._store

    @property
    def identity(self) -> str:
        return self._issuer.identity

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def state(self, conversation_id: ConversationRef) -> KeyState:
        key = ConversationId.coerce(conversation_id).hex()
        return self._states.get(key, KeyState.UNRESOLVED)

    def last_error(self, conversation_id: ConversationRef) -> Optional[BaseException]:
        """Error that moved the conversation to FAILED, if it is FAILED."""
        return self._errors.get(ConversationId.coerce(conversation_id).hex())

    def cancel(self, conversation_id: ConversationRef) -> bool:
        """Cancel an in-flight resolution. Returns True if one was running."""
        key = ConversationId.coerce(conversation_id).hex()
        task = self._inflight.get(key)
        if task is None or task.done():
            return False
        self._abandon(key, task)
        return True

    def _abandon(self, key: str, task: asyncio.Task) -> None:
        # detach first, so a caller arriving before the task unwinds starts afresh
        if self._inflight.get(key) is task:
            del self._inflight[key]
        task.cancel()

    def _owns(self, key: str, task: Optional[asyncio.Task]) -> bool:
        current = self._inflight.get(key)
        return current is None or current is task

    def forget(self, conversation_id: ConversationRef) -> None:
        """Drop the local secret and state; the escrow is left untouched."""
        conversation_id = ConversationId.coerce(conversation_id)
        key = conversation_id.hex()
        self.cancel(conversation_id)
        self._store.delete(conversation_id)
        self._states.pop(key, None)
        self._errors.pop(key, None)
        logger.info("Conversation forgotten locally: %s", key)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_conversation_key(self, conversation_id: ConversationRef) -> Secret:
        """Return the conversation's secret, resolving it if needed.

        A cached secret is returned without any network call. Concurrent calls
        for the same conversation share a single resolution.

        Raises:
            AccessDenied: The escrow policy rejected this identity.
            Expired: A freshly issued credential was still reported expired.
            EscrowUnavailable: Connectivity failure after bounded retries.
            MalformedEscrow: The published escrow cannot be used.
        """
        conversation_id = ConversationId.coerce(conversation_id)
        key = conversation_id.hex()
        secret = self._store.get(conversation_id)
        if secret is not None:
            self._states[key] = KeyState.READY
            return secret

        task = self._inflight.get(key)
        if task is None:
            self._states[key] = KeyState.RESOLVING
            self._errors.pop(key, None)
            task = asyncio.create_task(self._run(conversation_id))
            task.add_done_callback(functools.partial(self._discard, key))
            self._inflight[key] = task

        self._waiters[key] += 1
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # the last waiter leaving takes the resolution down with it
            if not task.done() and self._waiters[key] == 1:
                self._abandon(key, task)
            raise
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]

    async def _run(self, conversation_id: ConversationId) -> Secret:
        key = conversation_id.hex()
        try:
            secret = await self._with_retry(
                lambda: self._resolve_once(conversation_id), key,
            )
        except asyncio.CancelledError:
            if self._owns(key, asyncio.current_task()):
                self._states[key] = (
                    KeyState.READY if key in self._store else KeyState.UNRESOLVED
                )
            logger.info("Resolution cancelled: conversation=%s", key)
            raise
        except Exception as err:
            if self._owns(key, asyncio.current_task()):
                self._states[key] = KeyState.FAILED
                self._errors[key] = err
            logger.warning(
                "Resolution failed: conversation=%s error=%s: %s",
                key, type(err).__name__, err,
            )
            raise
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]
        self._states[key] = KeyState.READY
        logger.debug("Conversation ready: %s", key)
        return secret

    def _discard(self, key: str, task: asyncio.Task) -> None:
        # also covers tasks cancelled before their first step
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled():
            if self._owns(key, task) and self._states.get(key) is KeyState.RESOLVING:
                self._states[key] = KeyState.UNRESOLVED
        else:
            # mark the outcome retrieved even when every waiter has left
            task.exception()

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], key: str) -> T:
        attempts = self._config.retry_attempts
        delay = self._config.retry_base_delay
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except EscrowUnavailable as err:
                if attempt == attempts:
                    logger.error(
                        "Resolution gave up after %d attempts: conversation=%s: %s",
                        attempts, key, err,
                    )
                    raise
                logger.warning(
                    "Resolution attempt %d/%d failed: conversation=%s: %s; "
                    "retrying in %.2fs",
                    attempt, attempts, key, err, delay,
                )
                await self._sleep(delay)
                delay = min(delay * 2, self._config.retry_max_delay)
        raise AssertionError("unreachable")

    async def _resolve_once(self, conversation_id: ConversationId) -> Secret:
        escrowed = await self._fetch_escrow(conversation_id)
        if escrowed is not None:
            secret = await self._recover(escrowed)
        else:
            secret = await self._create(conversation_id)
        # synchronous and all-or-nothing; nothing awaits past this point
        self._store.put(conversation_id, secret)
        return secret

    async def _fetch_escrow(self, conversation_id: ConversationId) -> Optional[EscrowedSecret]:
        escrowed = await call_with_timeout(
            self._policy.get_escrowed_secret(conversation_id),
            self._config.call_timeout,
            "policy store read",
        )
        if escrowed is not None and escrowed.conversation_id != conversation_id:
            raise MalformedEscrow(
                f"policy slot for {conversation_id} holds an escrow "
                f"for {escrowed.conversation_id}"
            )
        return escrowed

    async def _create(self, conversation_id: ConversationId) -> Secret:
        secret = Secret.generate()
        escrowed = await self._escrow.escrow(
            secret, conversation_id, participant_policy=self._participant_policy,
        )
        result = await call_with_timeout(
            self._policy.compare_and_publish(conversation_id, escrowed),
            self._config.call_timeout,
            "policy store publish",
        )
        if result is PublishResult.OK:
            logger.info("New secret published: conversation=%s", conversation_id)
            return secret

        logger.info(
            "Publish race lost, recovering the published secret: conversation=%s",
            conversation_id,
        )
        del secret
        winner = await self._fetch_escrow(conversation_id)
        if winner is None:
            raise EscrowUnavailable(
                f"policy store rejected the publish for {conversation_id} "
                "but holds no escrow"
            )
        return await self._recover(winner)

    async def _recover(self, escrowed: EscrowedSecret) -> Secret:
        conversation_id = escrowed.conversation_id
        credential = await self._issue(conversation_id)
        try:
            return await self._escrow.recover(escrowed, credential)
        except Expired:
            logger.info(
                "Credential lapsed before use, reissuing: conversation=%s",
                conversation_id,
            )
        credential = await self._issue(conversation_id)
        return await self._escrow.recover(escrowed, credential)

    async def _issue(self, conversation_id: ConversationId) -> SessionCredential:
        return await call_with_timeout(
            self._issuer.issue(self._issuer.identity, conversation_id),
            self._config.call_timeout,
            "credential signing",
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def encrypt_message(
        self, plaintext: bytes, conversation_id: ConversationRef,
    ) -> MessageEnvelope:
        """Encrypt ``plaintext`` under the conversation secret.

        With ``bind_conversation_aad`` set, the conversation id is also
        authenticated as associated data; such envelopes only open on peers
        configured the same way.
        """
        conversation_id = ConversationId.coerce(conversation_id)
        secret = await self.resolve_conversation_key(conversation_id)
        return self._codec.encrypt(plaintext, secret, aad=self._aad(conversation_id))

    async def decrypt_message(
        self,
        envelope: Union[MessageEnvelope, str, bytes],
        conversation_id: ConversationRef,
    ) -> bytes:
        """Decrypt an envelope (or its base64 transport form).

        Raises:
            MalformedEnvelope: If the transport form cannot be decoded.
            AuthenticationFailure: On tampering or a foreign conversation.
        """
        conversation_id = ConversationId.coerce(conversation_id)
        if not isinstance(envelope, MessageEnvelope):
            envelope = MessageEnvelope.decode(envelope)
        secret = await self.resolve_conversation_key(conversation_id)
        return self._codec.decrypt(envelope, secret, aad=self._aad(conversation_id))

    def _aad(self, conversation_id: ConversationId) -> Optional[bytes]:
        if self._config.bind_conversation_aad:
            return conversation_id.value
        return None

    def _transport(self) -> BlobTransport:
        if self._blobs is None:
            raise RuntimeError("No blob transport configured")
        return self._blobs

    async def send_message(
        self,
        conversation_id: ConversationRef,
        content: str,
        file_type: str = "text",
    ) -> str:
        """Encrypt a chat message and store it; returns the blob id."""
        transport = self._transport()
        blob = MessageBlob(file_type=file_type, file=content)
        envelope = await self.encrypt_message(encode_blob(blob), conversation_id)
        blob_id = await transport.put(envelope.encode().encode("ascii"))
        logger.debug("Message stored: conversation=%s blob=%s", conversation_id, blob_id)
        return blob_id

    async def fetch_message(
        self, conversation_id: ConversationRef, blob_id: str,
    ) -> MessageBlob:
        """Load a stored message blob and decrypt it."""
        data = await self._transport().get(blob_id)
        plaintext = await self.decrypt_message(data, conversation_id)
        return decode_blob(plaintext)
