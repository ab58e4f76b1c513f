"""Convo Vault — end-to-end conversation secrets without a trusted key holder.

Callers use ``ConversationKeyManager``; the other components are injected
capabilities that can be swapped per platform.
"""
from .version import __version__
from .conf import KeyManagerConfig
from .codec import MessageCodec, encode_blob, decode_blob
from .credentials import Ed25519Signer, SessionCredentialIssuer, Signer, derive_identity
from .escrow import IdentityBasedEncryption, KeyEscrowService
from .exceptions import (
    ConvoVaultError,
    AuthenticationFailure,
    MalformedInput,
    MalformedEnvelope,
    MalformedEscrow,
    AccessDenied,
    Expired,
    EscrowUnavailable,
    SecretConflict,
)
from .manager import BlobTransport, ConversationKeyManager
from .policy import MemoryPolicyStore, PolicyStore
from .types import (
    ConversationId,
    CredentialStatus,
    EscrowedSecret,
    KeyState,
    MessageBlob,
    MessageEnvelope,
    PublishResult,
    Secret,
    SessionCredential,
)
from .vault import FileSecretStore, MemorySecretStore, SecretStore

__all__ = [
    "__version__",
    "KeyManagerConfig",
    "MessageCodec",
    "encode_blob",
    "decode_blob",
    "Ed25519Signer",
    "SessionCredentialIssuer",
    "Signer",
    "derive_identity",
    "IdentityBasedEncryption",
    "KeyEscrowService",
    "ConvoVaultError",
    "AuthenticationFailure",
    "MalformedInput",
    "MalformedEnvelope",
    "MalformedEscrow",
    "AccessDenied",
    "Expired",
    "EscrowUnavailable",
    "SecretConflict",
    "BlobTransport",
    "ConversationKeyManager",
    "MemoryPolicyStore",
    "PolicyStore",
    "ConversationId",
    "CredentialStatus",
    "EscrowedSecret",
    "KeyState",
    "MessageBlob",
    "MessageEnvelope",
    "PublishResult",
    "Secret",
    "SessionCredential",
    "FileSecretStore",
    "MemorySecretStore",
    "SecretStore",
]
