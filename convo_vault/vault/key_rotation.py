"""
Store Key Rotation — Batch re-encryption of cached secrets when rotating
master keys.

Re-seals every cache entry from one master key version to another in
configurable batches. Each batch ends with one atomic rewrite of the store
file, so an interrupted rotation can simply be run again: entries already
at the target version are skipped.

Security Note:
    Plaintext exists in memory only during re-encryption of each entry.
    Never log plaintext or ciphertext values.
"""
import logging

from ..exceptions import ConvoVaultError
from .secret_store import FileSecretStore

logger = logging.getLogger("convo_vault.vault")


def rotate_master_key(
    store: FileSecretStore,
    old_key_id: int,
    new_key_id: int,
    batch_size: int = 100,
) -> dict:
    """Re-encrypt all entries from old_key_id to new_key_id in batches.

    New writes are sealed with new_key_id as soon as rotation starts.

    Args:
        store: File-backed secret store to rotate.
        old_key_id: Source key version to rotate from.
        new_key_id: Target key version to rotate to.
        batch_size: Number of entries re-sealed per file rewrite.

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.

    Raises:
        KeyError: If old_key_id or new_key_id is unknown to the store.
        ValueError: If batch_size is not positive.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    for key_id in (old_key_id, new_key_id):
        if not store.has_key_version(key_id):
            raise KeyError(f"Key version {key_id} not found in master_keys")
    versions = store.key_versions()
    store.activate_key(new_key_id)

    stats = {"total": 0, "rotated": 0, "errors": 0, "skipped": 0}
    pending = [key for key, version in versions.items() if version == old_key_id]
    stats["skipped"] = len(versions) - len(pending)
    stats["total"] = len(versions)

    logger.info(
        "Starting key rotation from v%d to v%d (%d entries, batch_size=%d)",
        old_key_id, new_key_id, len(pending), batch_size,
    )

    for offset in range(0, len(pending), batch_size):
        batch = pending[offset:offset + batch_size]
        logger.info(
            "Processing batch %d (%d entries)", offset // batch_size + 1, len(batch),
        )
        for key in batch:
            try:
                store.reseal(key, new_key_id)
                stats["rotated"] += 1
            except (ConvoVaultError, KeyError, ValueError) as err:
                logger.error(
                    "Error rotating secret conversation=%s: %s", key, err,
                )
                stats["errors"] += 1
        store.flush()

    logger.info("Key rotation complete: %s", stats)
    return stats
