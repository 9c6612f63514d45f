"""FIFO lot replay over the transaction ledger.

Replay is a pure fold per canonical symbol: lots are consumed oldest first,
shorts are lots with negative quantity, and splits are applied to history
before the fold so the raw ledger is never rewritten.
"""

from __future__ import annotations

import copy
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, getcontext
from typing import Any, Iterable, Mapping, Sequence

from pydantic import ValidationError

from eod_portfolio.errors import CorporateActionAlreadyApplied, ReplayMalformedTransaction
from eod_portfolio.market_calendar import trading_day_ny
from eod_portfolio.schemas.ledger import TransactionDocument
from eod_portfolio.symbols import OPTION, canonicalize, split_key

getcontext().prec = 28

logger = logging.getLogger(__name__)

DIRECTIONS = {"buy": 1, "cover": 1, "sell": -1, "short": -1}
OPTION_MULTIPLIER = Decimal("100")
STOCK_MULTIPLIER = Decimal("1")
_ZERO = Decimal("0")


@dataclass
class TransactionInput:
    """Normalized, canonical transaction ready for lot building."""

    id: str
    symbol: str
    asset_type: str
    trading_day: date
    side: str
    quantity: Decimal
    price: Decimal
    multiplier: Decimal
    timestamp: datetime | None = None
    anomalies: list[str] = field(default_factory=list)

    @property
    def direction(self) -> int:
        return 1 if self.quantity > 0 else -1

    @property
    def sort_key(self) -> tuple[str, str, str]:
        stamp = self.timestamp.isoformat() if self.timestamp else ""
        return (self.trading_day.isoformat(), stamp, self.id)


@dataclass
class Lot:
    lot_id: str
    symbol: str
    quantity: Decimal
    cost_basis_per_unit: Decimal
    opened_date: date
    multiplier: Decimal = STOCK_MULTIPLIER
    opened_at: datetime | None = None

    @property
    def is_short(self) -> bool:
        return self.quantity < 0

    @property
    def cost_basis(self) -> Decimal:
        return self.quantity * self.cost_basis_per_unit * self.multiplier

    def to_dict(self) -> dict[str, Any]:
        return {
            "lot_id": self.lot_id,
            "symbol": self.symbol,
            "quantity": str(self.quantity),
            "cost_basis_per_unit": str(self.cost_basis_per_unit),
            "opened_date": self.opened_date.isoformat(),
            "multiplier": str(self.multiplier),
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Lot":
        opened_at = payload.get("opened_at")
        return cls(
            lot_id=payload["lot_id"],
            symbol=payload["symbol"],
            quantity=Decimal(payload["quantity"]),
            cost_basis_per_unit=Decimal(payload["cost_basis_per_unit"]),
            opened_date=date.fromisoformat(payload["opened_date"]),
            multiplier=Decimal(payload.get("multiplier", "1")),
            opened_at=datetime.fromisoformat(opened_at) if opened_at else None,
        )


@dataclass
class LotEvent:
    kind: str  # "open" or "close"
    transaction_id: str
    lot_id: str
    symbol: str
    trading_day: date
    quantity: Decimal
    price: Decimal
    entry_price: Decimal
    realized_pnl: Decimal = _ZERO


@dataclass(frozen=True)
class SplitAction:
    symbol: str
    effective_date: date
    ratio: Decimal

    def __post_init__(self) -> None:
        if self.ratio <= 0:
            raise ValueError(f"Split ratio must be positive, got {self.ratio}")
        object.__setattr__(self, "symbol", canonicalize(self.symbol).key)

    @property
    def key(self) -> str:
        return split_key(self.symbol, self.effective_date)


@dataclass
class PortfolioSnapshot:
    """Persistable replay state; ``watermark`` is the sort key of the last folded transaction."""

    lots: dict[str, list[Lot]] = field(default_factory=dict)
    realized_pnl: dict[str, Decimal] = field(default_factory=dict)
    applied_actions: list[str] = field(default_factory=list)
    processed_ids: set[str] = field(default_factory=set)
    watermark: tuple[str, str, str] | None = None

    def open_lots(self) -> list[Lot]:
        return [lot for symbol in sorted(self.lots) for lot in self.lots[symbol]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "lots": {symbol: [lot.to_dict() for lot in lots] for symbol, lots in sorted(self.lots.items()) if lots},
            "realized_pnl": {symbol: str(value) for symbol, value in sorted(self.realized_pnl.items())},
            "applied_actions": sorted(self.applied_actions),
            "processed_ids": sorted(self.processed_ids),
            "watermark": list(self.watermark) if self.watermark else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PortfolioSnapshot":
        watermark = payload.get("watermark")
        return cls(
            lots={
                symbol: [Lot.from_dict(item) for item in items]
                for symbol, items in (payload.get("lots") or {}).items()
            },
            realized_pnl={symbol: Decimal(value) for symbol, value in (payload.get("realized_pnl") or {}).items()},
            applied_actions=list(payload.get("applied_actions") or []),
            processed_ids=set(payload.get("processed_ids") or []),
            watermark=tuple(watermark) if watermark else None,
        )


@dataclass
class ReplayResult:
    snapshot: PortfolioSnapshot
    events: list[LotEvent] = field(default_factory=list)
    malformed: list[ReplayMalformedTransaction] = field(default_factory=list)
    noop_actions: list[CorporateActionAlreadyApplied] = field(default_factory=list)
    anomalies: dict[str, list[str]] = field(default_factory=dict)
    rebuilt: bool = False

    @property
    def lots(self) -> dict[str, list[Lot]]:
        return self.snapshot.lots

    @property
    def realized_pnl(self) -> dict[str, Decimal]:
        return self.snapshot.realized_pnl

    @property
    def total_realized_pnl(self) -> Decimal:
        return sum(self.snapshot.realized_pnl.values(), _ZERO)


def normalize_transaction(document: TransactionDocument) -> TransactionInput:
    """Canonicalize one validated ledger document; raises ``ReplayMalformedTransaction``."""

    canonical = canonicalize(document.symbol)
    if canonical.malformed:
        raise ReplayMalformedTransaction(document.id, f"malformed symbol: {canonical.reason}", document)

    anomalies: list[str] = []
    asset_type = canonical.asset_type
    if document.asset_type and document.asset_type != asset_type:
        anomalies.append(f"asset_type_mismatch: recorded={document.asset_type}, parsed={asset_type}")

    side = document.side
    if side is None:
        side = "buy" if document.quantity > 0 else "sell"
        anomalies.append("side_inferred_from_qty")
    direction = DIRECTIONS[side]

    quantity = abs(document.quantity) * direction
    if document.side is not None and document.quantity < 0 and direction > 0:
        # Sell quantities may carry either sign; only a negative buy or cover contradicts its side.
        anomalies.append(f"qty_sign_mismatch: side={side}, qty={document.quantity}")

    if document.multiplier is not None:
        multiplier = Decimal(document.multiplier)
    else:
        multiplier = OPTION_MULTIPLIER if asset_type == OPTION else STOCK_MULTIPLIER

    trading_day = document.trading_day_ny or trading_day_ny(document.timestamp_utc)
    return TransactionInput(
        id=document.id,
        symbol=canonical.key,
        asset_type=asset_type,
        trading_day=trading_day,
        side=side,
        quantity=quantity,
        price=document.price,
        multiplier=multiplier,
        timestamp=document.timestamp_utc,
        anomalies=anomalies,
    )


def prepare_transactions(
    raw_transactions: Iterable[Any],
) -> tuple[list[TransactionInput], list[ReplayMalformedTransaction]]:
    """Validate raw ledger rows or mappings; malformed entries are reported, not raised."""

    prepared: list[TransactionInput] = []
    malformed: list[ReplayMalformedTransaction] = []
    for raw in raw_transactions:
        if isinstance(raw, TransactionInput):
            prepared.append(raw)
            continue
        raw_id = raw.get("id") if isinstance(raw, Mapping) else getattr(raw, "id", None)
        try:
            document = (
                raw if isinstance(raw, TransactionDocument) else TransactionDocument.model_validate(raw)
            )
            prepared.append(normalize_transaction(document))
        except ValidationError as exc:
            reason = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors())
            malformed.append(ReplayMalformedTransaction(raw_id, reason, raw))
        except ReplayMalformedTransaction as exc:
            malformed.append(exc)
    for entry in malformed:
        logger.warning("%s", entry)
    return prepared, malformed


def split_adjust(transaction: TransactionInput, actions: Sequence[SplitAction]) -> TransactionInput:
    """Return ``transaction`` restated in post-split units for every split after its date."""

    factor = Decimal("1")
    for action in actions:
        if action.symbol == transaction.symbol and transaction.trading_day < action.effective_date:
            factor *= action.ratio
    if factor == 1:
        return transaction
    adjusted = copy.copy(transaction)
    adjusted.quantity = transaction.quantity * factor
    adjusted.price = transaction.price / factor
    adjusted.anomalies = [*transaction.anomalies, f"split_adjusted: factor={factor}"]
    return adjusted


class PortfolioEngine:
    """Deterministic FIFO replay with optional snapshot resume."""

    def replay(
        self,
        transactions: Iterable[Any],
        actions: Sequence[SplitAction] = (),
        snapshot: PortfolioSnapshot | None = None,
    ) -> ReplayResult:
        prepared, malformed = prepare_transactions(transactions)
        ordered = sorted(prepared, key=lambda tx: tx.sort_key)

        rebuilt = False
        if snapshot is not None and not self._snapshot_usable(snapshot, ordered, actions):
            logger.info("Snapshot predates back-dated transactions or splits; replaying from scratch")
            snapshot = None
            rebuilt = True

        noops: list[CorporateActionAlreadyApplied] = []
        if snapshot is None:
            state = PortfolioSnapshot()
            pending = ordered
            # Lots built from split-adjusted history already reflect every action.
            state.applied_actions = sorted({action.key for action in actions})
        else:
            state = PortfolioSnapshot.from_dict(snapshot.to_dict())
            pending = [tx for tx in ordered if tx.id not in state.processed_ids]
            for action in sorted(actions, key=lambda item: item.effective_date):
                try:
                    self.apply_split(state, action)
                except CorporateActionAlreadyApplied as exc:
                    noops.append(exc)

        result = ReplayResult(snapshot=state, malformed=malformed, noop_actions=noops, rebuilt=rebuilt)
        books: dict[str, deque[Lot]] = {symbol: deque(lots) for symbol, lots in state.lots.items()}

        for raw_tx in pending:
            tx = split_adjust(raw_tx, actions)
            if tx.anomalies:
                result.anomalies.setdefault(tx.symbol, []).extend(tx.anomalies)
            book = books.setdefault(tx.symbol, deque())
            realized = self._fold(tx, book, result.events)
            state.realized_pnl[tx.symbol] = state.realized_pnl.get(tx.symbol, _ZERO) + realized
            state.processed_ids.add(tx.id)
            state.watermark = tx.sort_key

        state.lots = {symbol: list(book) for symbol, book in sorted(books.items()) if book}
        return result

    def apply_split(self, state: PortfolioSnapshot, action: SplitAction) -> None:
        """Restate snapshot lots opened before the split; each action applies once."""

        if action.key in state.applied_actions:
            raise CorporateActionAlreadyApplied(action.key)
        for lot in state.lots.get(action.symbol, []):
            if lot.opened_date < action.effective_date:
                lot.quantity = lot.quantity * action.ratio
                lot.cost_basis_per_unit = lot.cost_basis_per_unit / action.ratio
        state.applied_actions.append(action.key)
        logger.info("Applied split %s ratio %s to snapshot lots", action.key, action.ratio)

    @staticmethod
    def _snapshot_usable(
        snapshot: PortfolioSnapshot,
        ordered: Sequence[TransactionInput],
        actions: Sequence[SplitAction],
    ) -> bool:
        if snapshot.watermark is None:
            return not snapshot.processed_ids
        watermark = tuple(snapshot.watermark)
        if any(tx.sort_key <= watermark for tx in ordered if tx.id not in snapshot.processed_ids):
            return False
        # A split can only be layered onto lots if nothing on or after its date was folded yet.
        return all(
            watermark[0] < action.effective_date.isoformat()
            for action in actions
            if action.key not in snapshot.applied_actions
        )

    @staticmethod
    def _fold(tx: TransactionInput, book: deque[Lot], events: list[LotEvent]) -> Decimal:
        remaining = abs(tx.quantity)
        realized = _ZERO

        while remaining > 0 and book and (book[0].quantity > 0) != (tx.direction > 0):
            lot = book[0]
            lot_sign = 1 if lot.quantity > 0 else -1
            take = min(abs(lot.quantity), remaining)
            pnl = (tx.price - lot.cost_basis_per_unit) * take * lot.multiplier * lot_sign
            realized += pnl
            events.append(
                LotEvent(
                    kind="close",
                    transaction_id=tx.id,
                    lot_id=lot.lot_id,
                    symbol=tx.symbol,
                    trading_day=tx.trading_day,
                    quantity=take,
                    price=tx.price,
                    entry_price=lot.cost_basis_per_unit,
                    realized_pnl=pnl,
                )
            )
            lot.quantity -= take * lot_sign
            remaining -= take
            if lot.quantity == 0:
                book.popleft()

        if remaining > 0:
            lot = Lot(
                lot_id=tx.id,
                symbol=tx.symbol,
                quantity=remaining * tx.direction,
                cost_basis_per_unit=tx.price,
                opened_date=tx.trading_day,
                multiplier=tx.multiplier,
                opened_at=tx.timestamp,
            )
            book.append(lot)
            events.append(
                LotEvent(
                    kind="open",
                    transaction_id=tx.id,
                    lot_id=lot.lot_id,
                    symbol=tx.symbol,
                    trading_day=tx.trading_day,
                    quantity=lot.quantity,
                    price=tx.price,
                    entry_price=tx.price,
                )
            )
        return realized


__all__ = [
    "DIRECTIONS",
    "Lot",
    "LotEvent",
    "PortfolioEngine",
    "PortfolioSnapshot",
    "ReplayResult",
    "SplitAction",
    "TransactionInput",
    "normalize_transaction",
    "prepare_transactions",
    "split_adjust",
]
