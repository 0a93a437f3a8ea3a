"""Errors raised by finality provider instances."""

from __future__ import annotations

INSTANCE_TERMINATING_MSG = "terminating the finality-provider instance due to critical error"


class FinalityProviderError(Exception):
    """Base class for finality provider instance errors."""

    default_message = "finality provider error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class FinalityProviderShutDown(FinalityProviderError):
    default_message = "the finality provider instance is shutting down"


class FinalityProviderJailed(FinalityProviderError):
    default_message = "the finality provider instance is jailed"


class FinalityProviderSlashed(FinalityProviderError):
    default_message = "the finality provider instance is slashed"


class UnrecoverableError(FinalityProviderError):
    """A chain error after which retrying makes no sense."""

    default_message = "unrecoverable error"


class ExpectedError(FinalityProviderError):
    """A chain error that signals the work is already done."""

    default_message = "expected error"


class CriticalError(Exception):
    """An error that forces a finality provider instance to terminate."""

    def __init__(self, err: BaseException, fp_btc_pk_hex: str) -> None:
        self.err = err
        self.fp_btc_pk_hex = fp_btc_pk_hex
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"critical err on finality-provider {self.fp_btc_pk_hex}: {self.err}"