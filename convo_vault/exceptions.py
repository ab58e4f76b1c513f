"""
Convo Vault exceptions.

Every failure the library surfaces has its own class so callers can tell a
permissions problem (``AccessDenied``) from a connectivity problem
(``EscrowUnavailable``). Only the classes flagged ``retryable`` are ever
retried internally.
"""


class ConvoVaultError(Exception):
    """Base error for all convo_vault failures."""

    retryable: bool = False


class AuthenticationFailure(ConvoVaultError):
    """AEAD tag check failed: tampered envelope or wrong secret."""


class MalformedInput(ConvoVaultError):
    """Structurally invalid input. Never retried."""


class MalformedEnvelope(MalformedInput):
    """A message envelope could not be decoded."""


class MalformedEscrow(MalformedInput):
    """An escrowed secret could not be parsed or yielded invalid key material."""


class AccessDenied(ConvoVaultError):
    """The escrow policy rejected the credential presented."""


class Expired(ConvoVaultError):
    """A session credential has lapsed; a fresh one may be issued."""

    retryable = True


class EscrowUnavailable(ConvoVaultError):
    """Transient failure reaching the escrow, policy store or signer.

    Timeouts are reported as this error too.
    """

    retryable = True


class SecretConflict(ConvoVaultError):
    """A different secret was written over an existing cached one.

    Secrets are immutable per conversation, so this is a programming error.
    """
