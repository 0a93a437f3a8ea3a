"""Errors raised by the finality provider stores."""


class StoreError(Exception):
    """Base class for store errors."""

    default_message = "store error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class CorruptedFinalityProviderDB(StoreError):
    """The on-disk representation of finality providers has changed."""

    default_message = "finality provider db is corrupted"


class FinalityProviderNotFound(StoreError, LookupError):
    """The requested finality provider is not in the store."""

    default_message = "finality provider not found"


class DuplicateFinalityProvider(StoreError):
    """A finality provider with the same key already exists."""

    default_message = "finality provider already exists"


class CorruptedPubRandProofDB(StoreError):
    """The on-disk representation of randomness proofs has changed."""

    default_message = "public randomness proof db is corrupted"


class PubRandProofNotFound(StoreError, LookupError):
    """The requested randomness proof is not in the store."""

    default_message = "public randomness proof not found"