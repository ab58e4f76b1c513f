"""Secret Vault — local, encrypted-at-rest cache of conversation secrets.

Security Note (Threat Model):
    Cached secrets are decrypted in process memory while the store is open.
    A memory dump of the application process could expose them.
    Keeping secrets out of process memory would need a platform keystore,
    which this package does not integrate with.
"""

from .secret_store import (
    SecretStore,
    MemorySecretStore,
    FileSecretStore,
    StoreEntry,
)
from .key_rotation import rotate_master_key
from .config import StoreConfig, load_master_keys, generate_master_key

__all__ = [
    "SecretStore",
    "MemorySecretStore",
    "FileSecretStore",
    "StoreEntry",
    "rotate_master_key",
    "StoreConfig",
    "load_master_keys",
    "generate_master_key",
]
