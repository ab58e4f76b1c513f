"""
SecretStore — local cache of conversation secrets.

Provides the public API for the local cache:
- ``get(conversation_id)`` — synchronous lookup, ``None`` on miss
- ``put(conversation_id, secret)`` — idempotent upsert, ``SecretConflict``
  when a different secret is already cached
- ``delete(conversation_id)`` / ``clear()`` — explicit invalidation

Two backends ship: ``MemorySecretStore`` (process lifetime) and
``FileSecretStore`` (one JSON document, every entry sealed at rest under a
versioned master key, replaced atomically on every write).

Security Note:
    Never log secret values. Only log conversation ids, operations and key
    versions.
"""
import os
import base64
import logging
import tempfile
from abc import ABC, abstractmethod
from typing import Optional, Union
from pathlib import Path
from datetime import datetime, timezone

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..exceptions import ConvoVaultError, SecretConflict
from ..types import ConversationId, Secret
from .config import StoreConfig
from .crypto import decrypt_at_rest, encrypt_at_rest, sealed_key_id

logger = logging.getLogger("convo_vault.vault")

_FORMAT_VERSION = 1

ConversationRef = Union[ConversationId, bytes, str]


class StoreEntry(BaseModel):
    """One cached secret."""

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    secret_base64: str = Field(repr=False)
    created_at: datetime

    @property
    def secret(self) -> Secret:
        return Secret.from_base64(self.secret_base64)


class SecretStore(ABC):
    """Abstract local secret cache.

    Subclasses only implement raw entry access; the immutability rule for
    ``put`` lives here.
    """

    @abstractmethod
    def _read(self, key: str) -> Optional[StoreEntry]:
        ...

    @abstractmethod
    def _write(self, entry: StoreEntry) -> None:
        ...

    @abstractmethod
    def _remove(self, key: str) -> bool:
        ...

    @abstractmethod
    def _keys(self) -> list[str]:
        ...

    @staticmethod
    def _key(conversation_id: ConversationRef) -> str:
        return ConversationId.coerce(conversation_id).hex()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, conversation_id: ConversationRef) -> Optional[Secret]:
        """Return the cached secret, or None on a cache miss."""
        entry = self._read(self._key(conversation_id))
        return entry.secret if entry is not None else None

    def entry(self, conversation_id: ConversationRef) -> Optional[StoreEntry]:
        return self._read(self._key(conversation_id))

    def put(self, conversation_id: ConversationRef, secret: Secret) -> StoreEntry:
        """Cache ``secret`` for a conversation.

        Writing the same secret again is a no-op.

        Raises:
            SecretConflict: If a different secret is already cached.
        """
        key = self._key(conversation_id)
        existing = self._read(key)
        if existing is not None:
            if existing.secret.matches(secret):
                return existing
            raise SecretConflict(
                f"a different secret is already cached for conversation {key}"
            )
        entry = StoreEntry(
            conversation_id=key,
            secret_base64=secret.to_base64(),
            created_at=datetime.now(timezone.utc),
        )
        self._write(entry)
        logger.debug("Secret cached: conversation=%s", key)
        return entry

    def delete(self, conversation_id: ConversationRef) -> bool:
        """Drop a cached secret. Returns True if an entry was removed."""
        key = self._key(conversation_id)
        removed = self._remove(key)
        if removed:
            logger.debug("Secret removed: conversation=%s", key)
        return removed

    def conversations(self) -> list[str]:
        """List conversation ids (hex) with a cached secret."""
        return self._keys()

    def clear(self) -> None:
        """Remove every cached secret (logout)."""
        for key in self._keys():
            self._remove(key)
        logger.info("Secret store cleared")

    def __contains__(self, conversation_id: object) -> bool:
        try:
            key = self._key(conversation_id)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return False
        return self._read(key) is not None

    def __len__(self) -> int:
        return len(self._keys())


class MemorySecretStore(SecretStore):
    """Process-lifetime store, for tests and ephemeral sessions."""

    def __init__(self):
        self._entries: dict[str, StoreEntry] = {}

    def _read(self, key: str) -> Optional[StoreEntry]:
        return self._entries.get(key)

    def _write(self, entry: StoreEntry) -> None:
        self._entries[entry.conversation_id] = entry

    def _remove(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def _keys(self) -> list[str]:
        return list(self._entries.keys())


class FileSecretStore(SecretStore):
    """Encrypted-at-rest store persisted to a single JSON file.

    On-disk document::

        {"version": 1, "entries": {"0x<conversation>": "<base64 sealed entry>"}}

    Each sealed entry is ``[key_id|nonce|ciphertext+tag]`` with the
    conversation id bound as associated data. The file is rewritten through a
    temporary file and ``os.replace``, so readers never see a partial write.

    Each flush first adopts entries another store instance has written to the
    same path since this one loaded, so sequential writers sharing a path do
    not drop each other's secrets. Writes are not locked: a path should have
    one writing process at a time.
    """

    def __init__(
        self,
        path: Union[str, Path],
        master_keys: dict[int, bytes],
        active_key_id: int,
    ):
        if active_key_id not in master_keys:
            raise KeyError(
                f"Active key version {active_key_id} not found in master_keys"
            )
        self._path = Path(path).expanduser()
        self._master_keys = master_keys
        self._active_key_id = active_key_id
        self._entries: dict[str, StoreEntry] = {}
        self._sealed: dict[str, bytes] = {}
        self._removed: set[str] = set()
        self._load()

    @classmethod
    def from_config(cls, config: StoreConfig) -> "FileSecretStore":
        return cls(config.path, config.master_keys, config.active_key_id)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def active_key_id(self) -> int:
        return self._active_key_id

    # ------------------------------------------------------------------
    # Sealing
    # ------------------------------------------------------------------

    def _seal(self, entry: StoreEntry, key_id: int) -> bytes:
        payload = orjson.dumps(entry.model_dump(mode="json"))
        return encrypt_at_rest(
            payload, key_id, self._master_keys[key_id],
            aad=entry.conversation_id.encode("ascii"),
        )

    def _unseal(self, key: str, sealed: bytes) -> StoreEntry:
        payload = decrypt_at_rest(
            sealed, self._master_keys, aad=key.encode("ascii"),
        )
        entry = StoreEntry.model_validate(orjson.loads(payload))
        if entry.conversation_id != key:
            raise ValueError(f"entry for {entry.conversation_id} stored under {key}")
        return entry

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _read_document(self) -> dict[str, str]:
        document = orjson.loads(self._path.read_bytes())
        if document.get("version") != _FORMAT_VERSION:
            raise ValueError(
                f"Unsupported secret store format: {document.get('version')!r}"
            )
        return document.get("entries", {})

    def _adopt(self, key: str, sealed_b64: str) -> bool:
        try:
            sealed = base64.b64decode(sealed_b64)
            entry = self._unseal(key, sealed)
        except (
            ConvoVaultError, KeyError, ValueError,
            orjson.JSONDecodeError, ValidationError,
        ) as err:
            logger.error(
                "Failed to load cached secret for conversation=%s: %s",
                key, err,
            )
            return False
        self._entries[key] = entry
        self._sealed[key] = sealed
        return True

    def _load(self) -> None:
        if not self._path.exists():
            logger.debug("Secret store %s does not exist yet", self._path)
            return
        for key, sealed_b64 in self._read_document().items():
            self._adopt(key, sealed_b64)
        logger.info(
            "Secret store loaded from %s: %d secret(s)",
            self._path, len(self._entries),
        )

    def _merge_from_disk(self) -> None:
        if not self._path.exists():
            return
        adopted = 0
        for key, sealed_b64 in self._read_document().items():
            if key in self._sealed or key in self._removed:
                continue
            adopted += self._adopt(key, sealed_b64)
        if adopted:
            logger.info(
                "Adopted %d secret(s) written to %s by another store",
                adopted, self._path,
            )

    def flush(self, merge: bool = True) -> None:
        """Atomically rewrite the store file.

        With ``merge``, entries written to the file by another store since
        this one loaded are adopted first instead of being overwritten.
        """
        if merge:
            self._merge_from_disk()
        document = {
            "version": _FORMAT_VERSION,
            "entries": {
                key: base64.b64encode(sealed).decode("ascii")
                for key, sealed in self._sealed.items()
            },
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=self._path.parent,
        )
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(orjson.dumps(document))
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def put(self, conversation_id: ConversationRef, secret: Secret) -> StoreEntry:
        # pick up a secret another store cached first, so it conflicts here
        self._merge_from_disk()
        return super().put(conversation_id, secret)

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def _read(self, key: str) -> Optional[StoreEntry]:
        return self._entries.get(key)

    def _write(self, entry: StoreEntry) -> None:
        key = entry.conversation_id
        self._sealed[key] = self._seal(entry, self._active_key_id)
        self._entries[key] = entry
        removed = key in self._removed
        self._removed.discard(key)
        try:
            self.flush()
        except OSError:
            self._sealed.pop(key, None)
            self._entries.pop(key, None)
            if removed:
                self._removed.add(key)
            raise

    def _remove(self, key: str) -> bool:
        if key not in self._entries:
            return False
        entry = self._entries.pop(key)
        sealed = self._sealed.pop(key)
        self._removed.add(key)
        try:
            self.flush()
        except OSError:
            self._entries[key] = entry
            self._sealed[key] = sealed
            self._removed.discard(key)
            raise
        return True

    def _keys(self) -> list[str]:
        return list(self._entries.keys())

    def clear(self) -> None:
        """Remove every cached secret, including ones other stores wrote."""
        entries, sealed = self._entries, self._sealed
        self._entries, self._sealed = {}, {}
        try:
            self.flush(merge=False)
        except OSError:
            self._entries, self._sealed = entries, sealed
            raise
        logger.info("Secret store cleared: %s", self._path)

    # ------------------------------------------------------------------
    # Key versions
    # ------------------------------------------------------------------

    def key_versions(self) -> dict[str, int]:
        """Map each cached conversation to the master key version sealing it."""
        return {key: sealed_key_id(sealed) for key, sealed in self._sealed.items()}

    def has_key_version(self, key_id: int) -> bool:
        return key_id in self._master_keys

    def activate_key(self, key_id: int) -> None:
        """Seal subsequent writes with master key version ``key_id``."""
        if key_id not in self._master_keys:
            raise KeyError(f"Master key version {key_id} not found in master_keys")
        self._active_key_id = key_id

    def reseal(self, conversation_id: ConversationRef, key_id: int) -> None:
        """Re-encrypt one entry under ``key_id``. Call ``flush()`` afterwards."""
        key = self._key(conversation_id)
        if key_id not in self._master_keys:
            raise KeyError(f"Master key version {key_id} not found in master_keys")
        # decrypt from disk form, so a tampered entry is not silently rewritten
        entry = self._unseal(key, self._sealed[key])
        self._sealed[key] = self._seal(entry, key_id)
