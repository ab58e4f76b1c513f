"""
Key manager configuration.

Reads settings from environment variables prefixed ``CONVO_VAULT_``::

    CONVO_VAULT_NAMESPACE = <escrow package namespace>
    CONVO_VAULT_THRESHOLD = <int, key servers needed to decrypt>
    CONVO_VAULT_KEY_SERVERS = <int, key servers in the network>
    CONVO_VAULT_CREDENTIAL_TTL = <seconds>
    CONVO_VAULT_CALL_TIMEOUT = <seconds>
    CONVO_VAULT_RETRY_ATTEMPTS = <int>
    CONVO_VAULT_CIPHER_BACKEND = aesgcm | chacha20
    CONVO_VAULT_BIND_CONVERSATION_AAD = true | false (default false)
"""
import os
import logging

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("convo_vault.conf")

_ENV_PREFIX = "CONVO_VAULT_"


class KeyManagerConfig(BaseModel):
    """Validated settings for escrow, credentials and resolution retries."""

    namespace: str = Field(default="convo_vault", min_length=1)
    threshold: int = Field(default=2, ge=1)
    key_servers: int = Field(default=3, ge=1)
    credential_ttl: float = Field(default=600.0, gt=0)
    max_credential_ttl: float = Field(default=3600.0, gt=0)
    call_timeout: float = Field(default=10.0, gt=0)
    retry_attempts: int = Field(default=4, ge=1, le=20)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=8.0, ge=0)
    cipher_backend: str = Field(default="aesgcm")
    bind_conversation_aad: bool = False

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "KeyManagerConfig":
        if self.threshold > self.key_servers:
            raise ValueError(
                f"threshold {self.threshold} exceeds the number of "
                f"key servers ({self.key_servers})"
            )
        if self.credential_ttl > self.max_credential_ttl:
            raise ValueError(
                f"credential_ttl {self.credential_ttl} exceeds "
                f"max_credential_ttl {self.max_credential_ttl}"
            )
        return self

    @classmethod
    def from_env(cls) -> "KeyManagerConfig":
        """Create a KeyManagerConfig from ``CONVO_VAULT_*`` variables.

        Unset variables keep their defaults.
        """
        values = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        logger.debug("Loaded key manager settings from env: %s", sorted(values))
        return cls(**values)
