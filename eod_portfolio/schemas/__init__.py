"""Pydantic schema exports."""

from .eod import OfficialCloseDocument, ProviderAttemptDocument
from .ledger import TransactionDocument

__all__ = ["OfficialCloseDocument", "ProviderAttemptDocument", "TransactionDocument"]
