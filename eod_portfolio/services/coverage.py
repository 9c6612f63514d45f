"""Work out which (trading day, symbol) closes a ledger needs."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Sequence

from eod_portfolio.errors import ReplayMalformedTransaction
from eod_portfolio.market_calendar import trading_days
from eod_portfolio.services.portfolio_engine import (
    SplitAction,
    TransactionInput,
    prepare_transactions,
    split_adjust,
)
from eod_portfolio.symbols import canonicalize, close_key


@dataclass
class RequiredClose:
    symbol: str
    trading_date: date
    asset_type: str
    traded: bool = False
    fallback_price: Decimal | None = None

    @property
    def key(self) -> str:
        return close_key(self.trading_date, self.symbol)


@dataclass
class CoveragePlan:
    required: list[RequiredClose] = field(default_factory=list)
    first_trade: dict[str, date] = field(default_factory=dict)
    malformed: list[ReplayMalformedTransaction] = field(default_factory=list)

    def fallback_prices(self) -> dict[str, Decimal]:
        """Close key -> the user's last fill that day, for last-resort estimates."""

        return {item.key: item.fallback_price for item in self.required if item.fallback_price is not None}

    def symbols(self) -> list[str]:
        return sorted(self.first_trade)


def plan_required_closes(
    transactions: Iterable[Any],
    end: date,
    actions: Sequence[SplitAction] = (),
) -> CoveragePlan:
    """Require a close on every trading day a position is held or traded.

    Option contracts stop at expiry. Days are walked from each symbol's first
    transaction up to ``end`` inclusive. Quantities are restated through
    ``actions`` so a split between a buy and its sell still nets to flat.
    """

    prepared, malformed = prepare_transactions(transactions)
    by_symbol: dict[str, list[TransactionInput]] = defaultdict(list)
    for tx in prepared:
        by_symbol[tx.symbol].append(tx)

    plan = CoveragePlan(malformed=malformed)
    for symbol in sorted(by_symbol):
        history = sorted(by_symbol[symbol], key=lambda tx: tx.sort_key)
        canonical = canonicalize(symbol)
        first = history[0].trading_day
        plan.first_trade[symbol] = first

        last_day = end
        if canonical.is_option and canonical.expiry is not None:
            last_day = min(last_day, canonical.expiry)

        position = Decimal("0")
        cursor = 0
        for day in trading_days(first, last_day):
            held_into_day = position != 0
            todays: list[TransactionInput] = []
            # Fills stamped on a non-trading day count toward the next session.
            while cursor < len(history) and history[cursor].trading_day <= day:
                todays.append(history[cursor])
                position += split_adjust(history[cursor], actions).quantity
                cursor += 1
            if not held_into_day and not todays:
                continue
            plan.required.append(
                RequiredClose(
                    symbol=symbol,
                    trading_date=day,
                    asset_type=canonical.asset_type,
                    traded=bool(todays),
                    fallback_price=todays[-1].price if todays and todays[-1].price > 0 else None,
                )
            )
    return plan


__all__ = ["CoveragePlan", "RequiredClose", "plan_required_closes"]
