"""
Shared fixtures.

``FakeIBE`` stands in for the threshold key-server network: it seals each
plaintext under a key derived from its master secret and the identity, and
applies a deny-list policy on decrypt. Failure injection knobs let tests
simulate outages, slow servers and creation races.
"""
import os
import asyncio
import hashlib
from typing import Optional

import pytest
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from convo_vault import (
    AccessDenied,
    ConversationId,
    ConversationKeyManager,
    Ed25519Signer,
    KeyManagerConfig,
    MemoryPolicyStore,
    MemorySecretStore,
    SessionCredentialIssuer,
)

_IBE_PREFIX = b"IBE1"


class FakeIBE:
    """In-process identity-based encryption capability."""

    def __init__(self):
        self._master = os.urandom(32)
        self.denied: set[str] = set()
        self.encrypt_calls = 0
        self.decrypt_calls = 0
        self.fail_encrypts = 0
        self.fail_decrypts = 0
        self.decrypt_delay = 0.0
        self.hold_encrypts = 0
        self._released = asyncio.Event()
        self.last_policy = None

    def _key(self, identity: bytes) -> bytes:
        return HKDF(
            algorithm=hashes.SHA256(), length=32, salt=None, info=identity,
        ).derive(self._master)

    async def encrypt(self, identity, threshold, plaintext, policy=None):
        self.encrypt_calls += 1
        self.last_policy = policy
        if self.fail_encrypts:
            self.fail_encrypts -= 1
            raise ConnectionError("key servers unreachable")
        if self.hold_encrypts:
            # park every caller until ``hold_encrypts`` of them have arrived
            if self.encrypt_calls >= self.hold_encrypts:
                self._released.set()
            await self._released.wait()
        nonce = os.urandom(12)
        sealed = AESGCM(self._key(identity)).encrypt(nonce, plaintext, None)
        return _IBE_PREFIX + bytes([threshold]) + nonce + sealed, os.urandom(32)

    async def decrypt(self, identity, credential, ciphertext):
        self.decrypt_calls += 1
        if self.decrypt_delay:
            await asyncio.sleep(self.decrypt_delay)
        if self.fail_decrypts:
            self.fail_decrypts -= 1
            raise ConnectionError("key servers unreachable")
        if not identity.endswith(credential.conversation_id.value):
            raise AccessDenied("credential does not cover this identity")
        if credential.identity in self.denied:
            raise AccessDenied(f"{credential.identity} is not a member")
        if not ciphertext.startswith(_IBE_PREFIX) or len(ciphertext) < 18:
            raise ValueError("not an IBE ciphertext")
        nonce, sealed = ciphertext[5:17], ciphertext[17:]
        try:
            return AESGCM(self._key(identity)).decrypt(nonce, sealed, None)
        except InvalidTag as err:
            raise ValueError("IBE ciphertext does not match identity") from err


class FakeBlobTransport:
    """Content-addressed in-memory blob store."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}

    async def put(self, data: bytes) -> str:
        blob_id = hashlib.sha256(data).hexdigest()
        self.blobs[blob_id] = data
        return blob_id

    async def get(self, blob_id: str) -> bytes:
        return self.blobs[blob_id]


class SteppingClock:
    """Returns the given timestamps in order, then keeps the last one."""

    def __init__(self, *times: float):
        self._times = list(times) or [1_700_000_000.0]

    def __call__(self) -> float:
        if len(self._times) > 1:
            return self._times.pop(0)
        return self._times[0]

    def set(self, now: float) -> None:
        self._times = [now]


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def config():
    return KeyManagerConfig(
        namespace="test-namespace",
        retry_attempts=3,
        retry_base_delay=0.5,
        retry_max_delay=4.0,
        call_timeout=2.0,
    )


@pytest.fixture
def conversation_id():
    return ConversationId(value=os.urandom(32))


@pytest.fixture
def signer():
    return Ed25519Signer()


@pytest.fixture
def clock():
    return SteppingClock(1_700_000_000.0)


@pytest.fixture
def issuer(signer, config, clock):
    return SessionCredentialIssuer(signer, config, clock=clock)


@pytest.fixture
def ibe():
    return FakeIBE()


@pytest.fixture
def policy_store():
    return MemoryPolicyStore()


@pytest.fixture
def blobs():
    return FakeBlobTransport()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_manager(ibe, policy_store, config, blobs, sleeper):
    """Build a manager for a new device sharing the same escrow network."""

    def _make(signer: Optional[Ed25519Signer] = None, store=None, cfg=None):
        return ConversationKeyManager.create(
            signer=signer or Ed25519Signer(),
            ibe=ibe,
            policy_store=policy_store,
            store=store if store is not None else MemorySecretStore(),
            config=cfg or config,
            blobs=blobs,
            sleep=sleeper,
        )

    return _make


@pytest.fixture
def manager(make_manager, signer):
    return make_manager(signer)


@pytest.fixture
def stepping_clock():
    """Factory for clocks that step through fixed timestamps."""
    return SteppingClock
