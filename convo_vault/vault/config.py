"""
Store Configuration — where the local secret cache lives and which master
keys seal it.

Environment::

    CONVO_VAULT_STORE_KEY_v{N} = <base64 32-byte master key, version N>
    CONVO_VAULT_STORE_ACTIVE_KEY = <version used for new writes>
    CONVO_VAULT_STORE_PATH = <cache file, default ~/.convo_vault/secrets.json>

Several versions may be set at once; older ones stay readable until
``rotate_master_key`` has moved every entry off them.

Security Note:
    Never log key material. Only log key IDs and version numbers.
"""
import os
import re
import base64
import secrets
import logging
from typing import Mapping, Optional
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("convo_vault.vault")

MASTER_KEY_SIZE = 32
DEFAULT_STORE_PATH = "~/.convo_vault/secrets.json"

_KEY_VAR = re.compile(r"^CONVO_VAULT_STORE_KEY_v(\d+)$")
_ACTIVE_VAR = "CONVO_VAULT_STORE_ACTIVE_KEY"
_PATH_VAR = "CONVO_VAULT_STORE_PATH"


def _decode_key(name: str, value: str) -> bytes:
    raw = base64.b64decode(value)
    if len(raw) != MASTER_KEY_SIZE:
        raise ValueError(f"{name} holds {len(raw)} bytes, expected {MASTER_KEY_SIZE}")
    return raw


def load_master_keys(environ: Optional[Mapping[str, str]] = None) -> dict[int, bytes]:
    """Collect every ``CONVO_VAULT_STORE_KEY_v{N}`` variable.

    Raises:
        RuntimeError: If none is set.
        ValueError: If a key is not 32 bytes once decoded.
    """
    environ = os.environ if environ is None else environ
    keys: dict[int, bytes] = {}
    for name, value in environ.items():
        match = _KEY_VAR.match(name)
        if match:
            keys[int(match.group(1))] = _decode_key(name, value)
    if not keys:
        raise RuntimeError(
            "no store master key configured; "
            "set CONVO_VAULT_STORE_KEY_v1 (see generate_master_key())"
        )
    logger.debug("Store master key versions available: %s", sorted(keys))
    return keys


def get_active_key_id(environ: Optional[Mapping[str, str]] = None) -> int:
    environ = os.environ if environ is None else environ
    try:
        return int(environ[_ACTIVE_VAR])
    except KeyError:
        raise RuntimeError(f"{_ACTIVE_VAR} is not set") from None


def generate_master_key() -> str:
    """New random master key, base64-encoded, ready for an env var."""
    return base64.b64encode(secrets.token_bytes(MASTER_KEY_SIZE)).decode("ascii")


class StoreConfig(BaseModel):
    """Validated settings for ``FileSecretStore``."""

    master_keys: dict[int, bytes]
    active_key_id: int
    path: Path = Field(default=Path(DEFAULT_STORE_PATH))

    @field_validator("master_keys")
    @classmethod
    def check_master_keys(cls, v: dict[int, bytes]) -> dict[int, bytes]:
        # the version is packed as an unsigned 16-bit prefix of every entry
        bad = [version for version in v if not 0 <= version <= 0xFFFF]
        if bad:
            raise ValueError(f"key versions out of range (0-65535): {bad}")
        short = [version for version, key in v.items() if len(key) != MASTER_KEY_SIZE]
        if short:
            raise ValueError(f"master keys must be {MASTER_KEY_SIZE} bytes: v{short}")
        return v

    @model_validator(mode="after")
    def check_active_key(self) -> "StoreConfig":
        if self.active_key_id not in self.master_keys:
            raise ValueError(
                f"active key v{self.active_key_id} is not among the loaded "
                f"versions {sorted(self.master_keys)}"
            )
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StoreConfig":
        environ = os.environ if environ is None else environ
        return cls(
            master_keys=load_master_keys(environ),
            active_key_id=get_active_key_id(environ),
            path=Path(environ.get(_PATH_VAR, DEFAULT_STORE_PATH)).expanduser(),
        )
