"""
Tests for ConversationKeyManager.

Tests cover:
- First resolution generates, escrows and publishes a secret
- Cache hits make no network calls
- Other devices recover the published secret through escrow
- Single-secret convergence under in-process and cross-device races
- Failure handling: AccessDenied, retries with backoff, timeouts, Expired
- Cancellation without corrupting the cache
- Message encryption, blob transport round trip, local invalidation
"""
import os
import base64
import asyncio

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from convo_vault import (
    AccessDenied,
    AuthenticationFailure,
    ConversationId,
    ConversationKeyManager,
    Ed25519Signer,
    EscrowUnavailable,
    Expired,
    KeyEscrowService,
    KeyManagerConfig,
    KeyState,
    MalformedEnvelope,
    MalformedEscrow,
    MemorySecretStore,
    MessageCodec,
    Secret,
    SessionCredentialIssuer,
)


async def _settle(rounds: int = 20):
    """Let pending tasks run until they park or finish."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _authoritative_secret(ibe, policy_store, conversation_id, config):
    """Recover what the policy store holds with a fresh outside identity."""
    signer = Ed25519Signer()
    issuer = SessionCredentialIssuer(signer, config)
    escrow = KeyEscrowService(ibe, issuer, config)
    escrowed = await policy_store.get_escrowed_secret(conversation_id)
    credential = await issuer.issue(signer.identity, conversation_id)
    return await escrow.recover(escrowed, credential)


class TestFirstResolution:

    async def test_generates_and_publishes(
        self, manager, conversation_id, ibe, policy_store, config,
    ):
        assert manager.state(conversation_id) is KeyState.UNRESOLVED
        secret = await manager.resolve_conversation_key(conversation_id)

        assert manager.state(conversation_id) is KeyState.READY
        assert manager.store.get(conversation_id) == secret
        assert conversation_id in policy_store
        assert ibe.encrypt_calls == 1
        # the creator caches directly, without an escrow round trip
        assert ibe.decrypt_calls == 0
        assert await _authoritative_secret(
            ibe, policy_store, conversation_id, config,
        ) == secret

    async def test_accepts_hex_ids(self, manager, conversation_id):
        secret = await manager.resolve_conversation_key(conversation_id.hex())
        assert await manager.resolve_conversation_key(conversation_id) == secret

    async def test_cache_hit_makes_no_network_calls(
        self, manager, conversation_id, ibe, policy_store,
    ):
        secret = await manager.resolve_conversation_key(conversation_id)
        reads, publishes = policy_store.reads, policy_store.publishes
        encrypts, decrypts = ibe.encrypt_calls, ibe.decrypt_calls

        for _ in range(5):
            assert await manager.resolve_conversation_key(conversation_id) == secret

        assert (policy_store.reads, policy_store.publishes) == (reads, publishes)
        assert (ibe.encrypt_calls, ibe.decrypt_calls) == (encrypts, decrypts)

    async def test_prepopulated_cache_is_ready_immediately(
        self, make_manager, conversation_id, policy_store,
    ):
        store = MemorySecretStore()
        secret = Secret.generate()
        store.put(conversation_id, secret)
        manager = make_manager(store=store)
        assert await manager.resolve_conversation_key(conversation_id) == secret
        assert policy_store.reads == 0


class TestRecovery:

    async def test_second_device_recovers(self, make_manager, conversation_id, ibe):
        alice = make_manager()
        bob = make_manager()
        secret = await alice.resolve_conversation_key(conversation_id)

        assert await bob.resolve_conversation_key(conversation_id) == secret
        assert ibe.encrypt_calls == 1
        assert ibe.decrypt_calls == 1
        assert bob.state(conversation_id) is KeyState.READY

    async def test_same_user_after_cache_loss(self, make_manager, signer, conversation_id):
        first = make_manager(signer)
        secret = await first.resolve_conversation_key(conversation_id)
        fresh_install = make_manager(signer)
        assert await fresh_install.resolve_conversation_key(conversation_id) == secret

    async def test_access_denied_is_not_retried(
        self, make_manager, conversation_id, ibe, sleeper,
    ):
        await make_manager().resolve_conversation_key(conversation_id)
        outsider = make_manager()
        ibe.denied.add(outsider.identity)

        with pytest.raises(AccessDenied):
            await outsider.resolve_conversation_key(conversation_id)

        assert outsider.state(conversation_id) is KeyState.FAILED
        assert isinstance(outsider.last_error(conversation_id), AccessDenied)
        assert ibe.decrypt_calls == 1
        assert sleeper.delays == []
        assert outsider.store.get(conversation_id) is None

    async def test_failed_conversation_retries_on_request(
        self, make_manager, conversation_id, ibe,
    ):
        secret = await make_manager().resolve_conversation_key(conversation_id)
        member = make_manager()
        ibe.denied.add(member.identity)
        with pytest.raises(AccessDenied):
            await member.resolve_conversation_key(conversation_id)

        ibe.denied.clear()
        assert await member.resolve_conversation_key(conversation_id) == secret
        assert member.state(conversation_id) is KeyState.READY
        assert member.last_error(conversation_id) is None

    async def test_corrupted_slot(self, manager, conversation_id, policy_store):
        policy_store.put_raw(conversation_id, b"definitely not an escrow")
        with pytest.raises(MalformedEscrow):
            await manager.resolve_conversation_key(conversation_id)
        assert manager.state(conversation_id) is KeyState.FAILED

    async def test_slot_for_other_conversation(self, manager, conversation_id, policy_store, make_manager):
        other = ConversationId(value=os.urandom(32))
        await make_manager().resolve_conversation_key(other)
        raw = (await policy_store.get_escrowed_secret(other)).to_bytes()
        policy_store.put_raw(conversation_id, raw)
        with pytest.raises(MalformedEscrow):
            await manager.resolve_conversation_key(conversation_id)

    async def test_expired_credential_is_reissued(
        self, make_manager, ibe, policy_store, config, sleeper, conversation_id, stepping_clock,
    ):
        await make_manager().resolve_conversation_key(conversation_id)
        signer = Ed25519Signer()
        # issue, verify (lapsed), reissue, verify
        clock = stepping_clock(0.0, 700.0, 700.0, 701.0)
        issuer = SessionCredentialIssuer(signer, config, clock=clock)
        manager = ConversationKeyManager(
            store=MemorySecretStore(),
            policy_store=policy_store,
            escrow=KeyEscrowService(ibe, issuer, config),
            issuer=issuer,
            config=config,
            sleep=sleeper,
        )
        secret = await manager.resolve_conversation_key(conversation_id)
        assert manager.store.get(conversation_id) == secret

    async def test_expired_twice_fails(
        self, make_manager, ibe, policy_store, config, sleeper, conversation_id, stepping_clock,
    ):
        await make_manager().resolve_conversation_key(conversation_id)
        signer = Ed25519Signer()
        clock = stepping_clock(0.0, 700.0, 1400.0, 2100.0)
        issuer = SessionCredentialIssuer(signer, config, clock=clock)
        manager = ConversationKeyManager(
            store=MemorySecretStore(),
            policy_store=policy_store,
            escrow=KeyEscrowService(ibe, issuer, config),
            issuer=issuer,
            config=config,
            sleep=sleeper,
        )
        with pytest.raises(Expired):
            await manager.resolve_conversation_key(conversation_id)
        assert manager.state(conversation_id) is KeyState.FAILED
        assert ibe.decrypt_calls == 0


class TestTransientFailures:

    async def test_retries_with_backoff(self, manager, conversation_id, ibe, sleeper):
        ibe.fail_encrypts = 2
        secret = await manager.resolve_conversation_key(conversation_id)
        assert manager.store.get(conversation_id) == secret
        assert sleeper.delays == [0.5, 1.0]
        assert ibe.encrypt_calls == 3

    async def test_gives_up_after_bounded_attempts(
        self, manager, conversation_id, ibe, sleeper, policy_store,
    ):
        ibe.fail_encrypts = 10
        with pytest.raises(EscrowUnavailable):
            await manager.resolve_conversation_key(conversation_id)
        assert ibe.encrypt_calls == 3
        assert sleeper.delays == [0.5, 1.0]
        assert manager.state(conversation_id) is KeyState.FAILED
        assert conversation_id not in policy_store
        assert manager.store.get(conversation_id) is None

    async def test_backoff_is_capped(self, make_manager, conversation_id, ibe, sleeper):
        config = KeyManagerConfig(
            namespace="test-namespace",
            retry_attempts=6,
            retry_base_delay=1.0,
            retry_max_delay=3.0,
        )
        manager = make_manager(cfg=config)
        ibe.fail_encrypts = 5
        await manager.resolve_conversation_key(conversation_id)
        assert sleeper.delays == [1.0, 2.0, 3.0, 3.0, 3.0]

    async def test_recover_timeout_is_retried(
        self, make_manager, conversation_id, ibe, sleeper,
    ):
        secret = await make_manager().resolve_conversation_key(conversation_id)
        config = KeyManagerConfig(
            namespace="test-namespace", call_timeout=0.05, retry_attempts=2,
        )
        slow = make_manager(cfg=config)
        ibe.decrypt_delay = 1.0
        with pytest.raises(EscrowUnavailable):
            await slow.resolve_conversation_key(conversation_id)
        assert len(sleeper.delays) == 1

        ibe.decrypt_delay = 0.0
        assert await slow.resolve_conversation_key(conversation_id) == secret


class TestConvergence:

    async def test_concurrent_calls_share_one_resolution(
        self, manager, conversation_id, ibe, policy_store,
    ):
        results = await asyncio.gather(
            *(manager.resolve_conversation_key(conversation_id) for _ in range(8))
        )
        assert len({r.value for r in results}) == 1
        assert ibe.encrypt_calls == 1
        assert policy_store.publishes == 1

    async def test_two_devices_race_to_create(
        self, make_manager, conversation_id, ibe, policy_store, config,
    ):
        """A and B both generate; one publish wins, the other recovers it."""
        a, b = make_manager(), make_manager()
        ibe.hold_encrypts = 2

        secret_a, secret_b = await asyncio.gather(
            a.resolve_conversation_key(conversation_id),
            b.resolve_conversation_key(conversation_id),
        )

        assert secret_a == secret_b
        assert ibe.encrypt_calls == 2
        assert policy_store.publishes == 2
        assert ibe.decrypt_calls == 1
        assert a.state(conversation_id) is KeyState.READY
        assert b.state(conversation_id) is KeyState.READY
        assert await _authoritative_secret(
            ibe, policy_store, conversation_id, config,
        ) == secret_a

    async def test_many_devices_converge(
        self, make_manager, conversation_id, ibe, policy_store, config,
    ):
        devices = [make_manager() for _ in range(5)]
        ibe.hold_encrypts = len(devices)

        results = await asyncio.gather(
            *(d.resolve_conversation_key(conversation_id) for d in devices)
        )

        authoritative = await _authoritative_secret(
            ibe, policy_store, conversation_id, config,
        )
        assert all(r == authoritative for r in results)
        assert all(d.state(conversation_id) is KeyState.READY for d in devices)
        assert all(d.store.get(conversation_id) == authoritative for d in devices)

    async def test_different_conversations_resolve_independently(self, manager, ibe):
        cids = [ConversationId(value=os.urandom(32)) for _ in range(4)]
        results = await asyncio.gather(
            *(manager.resolve_conversation_key(c) for c in cids)
        )
        assert len({r.value for r in results}) == 4
        assert ibe.encrypt_calls == 4


class TestCancellation:

    async def test_cancel_leaves_cache_clean(
        self, manager, conversation_id, ibe, policy_store,
    ):
        ibe.hold_encrypts = 2  # a single caller parks inside escrow
        task = asyncio.create_task(manager.resolve_conversation_key(conversation_id))
        await _settle()
        assert manager.state(conversation_id) is KeyState.RESOLVING

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await _settle()

        assert manager.state(conversation_id) is KeyState.UNRESOLVED
        assert manager.store.get(conversation_id) is None
        assert conversation_id not in policy_store

        ibe.hold_encrypts = 0
        secret = await manager.resolve_conversation_key(conversation_id)
        assert manager.store.get(conversation_id) == secret

    async def test_one_waiter_leaving_keeps_resolution_alive(
        self, manager, conversation_id, ibe,
    ):
        ibe.hold_encrypts = 2
        leaving = asyncio.create_task(manager.resolve_conversation_key(conversation_id))
        staying = asyncio.create_task(manager.resolve_conversation_key(conversation_id))
        await _settle()

        leaving.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leaving
        assert manager.state(conversation_id) is KeyState.RESOLVING

        ibe._released.set()
        secret = await staying
        assert manager.store.get(conversation_id) == secret
        assert manager.state(conversation_id) is KeyState.READY

    async def test_explicit_cancel(self, manager, conversation_id, ibe):
        assert manager.cancel(conversation_id) is False
        ibe.hold_encrypts = 2
        task = asyncio.create_task(manager.resolve_conversation_key(conversation_id))
        await _settle()
        assert manager.cancel(conversation_id) is True
        with pytest.raises(asyncio.CancelledError):
            await task
        assert manager.state(conversation_id) is KeyState.UNRESOLVED

    async def test_resolve_right_after_cancel(self, manager, conversation_id, ibe):
        ibe.hold_encrypts = 2
        first = asyncio.create_task(manager.resolve_conversation_key(conversation_id))
        await _settle()
        assert manager.cancel(conversation_id) is True
        # joins nothing: the cancelled resolution is already detached
        second = asyncio.create_task(manager.resolve_conversation_key(conversation_id))

        with pytest.raises(asyncio.CancelledError):
            await first
        secret = await second
        assert manager.store.get(conversation_id) == secret
        assert manager.state(conversation_id) is KeyState.READY

    async def test_resolve_right_after_forget(self, manager, conversation_id, ibe):
        ibe.hold_encrypts = 2
        first = asyncio.create_task(manager.resolve_conversation_key(conversation_id))
        await _settle()
        manager.forget(conversation_id)
        secret = await manager.resolve_conversation_key(conversation_id)

        with pytest.raises(asyncio.CancelledError):
            await first
        await _settle()
        assert manager.store.get(conversation_id) == secret
        assert manager.state(conversation_id) is KeyState.READY


class TestMessages:

    async def test_encrypt_decrypt_between_devices(self, make_manager, conversation_id):
        alice, bob = make_manager(), make_manager()
        envelope = await alice.encrypt_message(b"hello world", conversation_id)
        assert await bob.decrypt_message(envelope, conversation_id) == b"hello world"
        assert await bob.decrypt_message(envelope.encode(), conversation_id) == b"hello world"

    async def test_envelope_bound_to_conversation(self, manager, conversation_id):
        other = ConversationId(value=os.urandom(32))
        envelope = await manager.encrypt_message(b"private", conversation_id)
        with pytest.raises(AuthenticationFailure):
            await manager.decrypt_message(envelope, other)

    async def test_opens_plain_aes_gcm_messages(self, manager, conversation_id):
        secret = await manager.resolve_conversation_key(conversation_id)
        iv = os.urandom(12)
        sealed = AESGCM(secret.value).encrypt(iv, b"hello world", None)
        wire = base64.b64encode(iv + sealed).decode("ascii")
        assert await manager.decrypt_message(wire, conversation_id) == b"hello world"

    async def test_sends_plain_aes_gcm_messages(self, manager, conversation_id):
        envelope = await manager.encrypt_message(b"hello world", conversation_id)
        secret = manager.store.get(conversation_id)
        plaintext = AESGCM(secret.value).decrypt(
            envelope.nonce, envelope.ciphertext + envelope.tag, None,
        )
        assert plaintext == b"hello world"

    async def test_conversation_binding_is_opt_in(
        self, make_manager, config, conversation_id,
    ):
        bound = config.model_copy(update={"bind_conversation_aad": True})
        alice, bob, carol = make_manager(cfg=bound), make_manager(cfg=bound), make_manager()
        envelope = await alice.encrypt_message(b"bound", conversation_id)
        assert await bob.decrypt_message(envelope, conversation_id) == b"bound"
        with pytest.raises(AuthenticationFailure):
            await carol.decrypt_message(envelope, conversation_id)

    async def test_tampered_envelope(self, manager, conversation_id):
        envelope = await manager.encrypt_message(b"private", conversation_id)
        tampered = envelope.model_copy(
            update={"ciphertext": bytes([envelope.ciphertext[0] ^ 1]) + envelope.ciphertext[1:]}
        )
        with pytest.raises(AuthenticationFailure):
            await manager.decrypt_message(tampered, conversation_id)

    async def test_malformed_transport_form(self, manager, conversation_id):
        with pytest.raises(MalformedEnvelope):
            await manager.decrypt_message("AAAA", conversation_id)

    async def test_uses_configured_cipher(self, make_manager, conversation_id):
        config = KeyManagerConfig(namespace="test-namespace", cipher_backend="chacha20")
        manager = make_manager(cfg=config)
        envelope = await manager.encrypt_message(b"payload", conversation_id)
        secret = manager.store.get(conversation_id)
        assert MessageCodec("chacha20").decrypt(envelope, secret) == b"payload"

    async def test_send_and_fetch(self, make_manager, conversation_id, blobs):
        alice, bob = make_manager(), make_manager()
        blob_id = await alice.send_message(conversation_id, "see you at noon")
        stored = blobs.blobs[blob_id]
        assert b"see you at noon" not in stored

        message = await bob.fetch_message(conversation_id, blob_id)
        assert message.file == "see you at noon"
        assert message.file_type == "text"

    async def test_send_without_transport(self, policy_store, ibe, conversation_id):
        manager = ConversationKeyManager.create(
            signer=Ed25519Signer(), ibe=ibe, policy_store=policy_store,
        )
        with pytest.raises(RuntimeError):
            await manager.send_message(conversation_id, "hi")


class TestForget:

    async def test_forget_then_recover(self, manager, conversation_id, ibe):
        secret = await manager.resolve_conversation_key(conversation_id)
        manager.forget(conversation_id)
        assert manager.state(conversation_id) is KeyState.UNRESOLVED
        assert manager.store.get(conversation_id) is None

        assert await manager.resolve_conversation_key(conversation_id) == secret
        assert ibe.encrypt_calls == 1
        assert ibe.decrypt_calls == 1
