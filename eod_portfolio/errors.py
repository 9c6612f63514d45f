"""Error taxonomy shared by the fetch, store, repair, and replay layers."""

from __future__ import annotations

from typing import Any


class EodPipelineError(RuntimeError):
    """Base class for pipeline errors."""


class MalformedSymbol(EodPipelineError):
    """Raised by callers that require a well-formed canonical symbol."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f"Malformed symbol {raw!r}: {reason}")
        self.raw = raw
        self.reason = reason


class ProviderError(EodPipelineError):
    """Base class for errors raised by close-price providers."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.http_status = http_status


class ProviderTransportError(ProviderError):
    """Network, timeout, throttling, or unexpected payload; retryable."""


class ProviderNoData(ProviderError):
    """The provider answered but has no close for the symbol/date."""


class CoverageWindowExcluded(EodPipelineError):
    """The symbol/date pair lies outside the instrument's coverage window."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"{key} outside coverage window: {reason}")
        self.key = key
        self.reason = reason


class TrustConflict(EodPipelineError):
    """A close write was rejected by the provider-trust rules."""

    def __init__(self, key: str, *, existing_provider: str, incoming_provider: str, reason: str) -> None:
        super().__init__(
            f"{key}: {incoming_provider} write rejected over {existing_provider} ({reason})"
        )
        self.key = key
        self.existing_provider = existing_provider
        self.incoming_provider = incoming_provider
        self.reason = reason


class ReplayMalformedTransaction(EodPipelineError):
    """A ledger transaction could not be used for FIFO replay."""

    def __init__(self, transaction_id: str | None, reason: str, raw: Any = None) -> None:
        super().__init__(f"Transaction {transaction_id or '<unknown>'} excluded: {reason}")
        self.transaction_id = transaction_id
        self.reason = reason
        self.raw = raw


class CorporateActionAlreadyApplied(EodPipelineError):
    """The split has already been applied to the snapshot; treated as a no-op."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Corporate action {key} already applied")
        self.key = key


__all__ = [
    "EodPipelineError",
    "MalformedSymbol",
    "ProviderError",
    "ProviderTransportError",
    "ProviderNoData",
    "CoverageWindowExcluded",
    "TrustConflict",
    "ReplayMalformedTransaction",
    "CorporateActionAlreadyApplied",
]
