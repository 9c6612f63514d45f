"""Symbol canonicalization for stocks and OCC option contracts.

Every component that reads or writes price data goes through
:func:`canonicalize` so a contract spelled ``NIO 260618 P 3.5``,
``NIO260618P3.5`` or ``NIO260618P00003500`` always resolves to the same
storage key. The human-facing short spelling is kept on ``display``.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

STOCK = "stock"
OPTION = "option"

_WHITESPACE_RE = re.compile(r"\s+")
_STOCK_RE = re.compile(r"^[A-Z0-9._-]+$")
_OPTION_RE = re.compile(
    r"^(?P<root>[A-Z]{1,6}(?:\.[A-Z]{1,2})?)"
    r"(?P<expiry>\d{6})"
    r"(?P<right>[CP])"
    r"(?P<strike>\d+(?:\.\d*)?|\.\d+)$"
)
_OPTION_PREFIX_RE = re.compile(r"^[A-Z]{1,6}(?:\.[A-Z]{1,2})?\d{6}[CP]")
_STRIKE_SCALE = Decimal(1000)
_STRIKE_LIMIT = 10**8


@dataclass(frozen=True)
class CanonicalSymbol:
    """Comparison key plus the parts parsed out of a raw symbol."""

    key: str
    display: str
    raw: str
    asset_type: str = STOCK
    malformed: bool = False
    reason: str | None = None
    underlying: str = ""
    expiry: date | None = None
    right: str | None = None
    strike: Decimal | None = field(default=None)

    @property
    def is_option(self) -> bool:
        return self.asset_type == OPTION

    @property
    def occ(self) -> str:
        """OCC spelling used when querying vendors; equals ``key``."""

        return self.key

    def __str__(self) -> str:
        return self.key


@dataclass
class NormalizedList:
    valid: list[str]
    invalid: list[tuple[str, str]]
    skipped: list[str]


def _clean(raw: object) -> str:
    if raw is None:
        return ""
    text = unicodedata.normalize("NFKC", str(raw)).strip()
    return _WHITESPACE_RE.sub("", text).upper()


def _format_strike(strike: Decimal) -> str:
    text = format(strike.normalize(), "f")
    return text


def _parse_option(cleaned: str, raw: str) -> CanonicalSymbol | None:
    match = _OPTION_RE.match(cleaned)
    if not match:
        return None

    root = match.group("root")
    expiry_text = match.group("expiry")
    right = match.group("right")
    strike_text = match.group("strike")
    problems: list[str] = []

    expiry: date | None
    try:
        expiry = datetime.strptime(expiry_text, "%y%m%d").date()
    except ValueError:
        expiry = None
        problems.append(f"invalid expiry {expiry_text}")

    if len(strike_text) == 8 and strike_text.isdigit():
        # Already OCC padded: thousandths of a dollar.
        scaled = Decimal(int(strike_text))
    else:
        try:
            scaled = Decimal(strike_text) * _STRIKE_SCALE
        except InvalidOperation:
            scaled = Decimal(0)
            problems.append(f"invalid strike {strike_text}")
        if scaled != scaled.to_integral_value():
            problems.append(f"strike {strike_text} finer than 1/1000")
            scaled = scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP)

    scaled_int = int(scaled)
    if scaled_int >= _STRIKE_LIMIT:
        problems.append(f"strike {strike_text} exceeds 8 digits")
    strike = Decimal(scaled_int) / _STRIKE_SCALE

    key = f"{root}{expiry_text}{right}{scaled_int:08d}"
    display = f"{root}{expiry_text}{right}{_format_strike(strike)}"
    return CanonicalSymbol(
        key=key,
        display=display,
        raw=raw,
        asset_type=OPTION,
        malformed=bool(problems),
        reason="; ".join(problems) or None,
        underlying=root,
        expiry=expiry,
        right=right,
        strike=strike,
    )


def canonicalize(raw: object) -> CanonicalSymbol:
    """Return the canonical form of ``raw``; never raises.

    Malformed input still yields a best-effort key with ``malformed`` set.
    """

    if isinstance(raw, CanonicalSymbol):
        raw = raw.key
    raw_text = "" if raw is None else str(raw)
    cleaned = _clean(raw_text)

    if not cleaned:
        return CanonicalSymbol(key="", display="", raw=raw_text, malformed=True, reason="empty symbol")

    option = _parse_option(cleaned, raw_text)
    if option is not None:
        return option

    if _OPTION_PREFIX_RE.match(cleaned):
        return CanonicalSymbol(
            key=cleaned,
            display=cleaned,
            raw=raw_text,
            asset_type=OPTION,
            malformed=True,
            reason="option symbol without a numeric strike",
            underlying=re.match(r"^[A-Z.]+", cleaned).group(0),
        )

    if not _STOCK_RE.match(cleaned):
        return CanonicalSymbol(
            key=cleaned,
            display=cleaned,
            raw=raw_text,
            malformed=True,
            reason=f"invalid characters, expected {_STOCK_RE.pattern}",
            underlying=cleaned,
        )

    return CanonicalSymbol(key=cleaned, display=cleaned, raw=raw_text, underlying=cleaned)


def canonical_key(raw: object) -> str:
    return canonicalize(raw).key


def underlying(raw: object) -> str:
    return canonicalize(raw).underlying


def close_key(trading_date: date, symbol: object) -> str:
    """Persisted key shared by official closes and backfill requests."""

    return f"{trading_date.isoformat()}_{canonical_key(symbol)}"


def split_key(symbol: object, effective_date: date) -> str:
    return f"SPLIT_{canonical_key(symbol)}_{effective_date.isoformat()}"


def normalize_list(symbols: Iterable[object], *, max_single: int = 50) -> NormalizedList:
    """Canonicalize, de-duplicate and sort a request's symbol list.

    Raises ``ValueError`` when the list is longer than ``max_single``.
    """

    items = list(symbols)
    if len(items) > max_single:
        raise ValueError(f"Input list exceeds the maximum size of {max_single} symbols per request.")

    seen: set[str] = set()
    valid: list[str] = []
    invalid: list[tuple[str, str]] = []
    skipped: list[str] = []
    for item in items:
        canonical = canonicalize(item)
        if canonical.malformed:
            invalid.append((canonical.raw, canonical.reason or "malformed"))
            continue
        if canonical.key in seen:
            skipped.append(canonical.key)
            continue
        seen.add(canonical.key)
        valid.append(canonical.key)

    valid.sort()
    return NormalizedList(valid=valid, invalid=invalid, skipped=skipped)


__all__ = [
    "STOCK",
    "OPTION",
    "CanonicalSymbol",
    "NormalizedList",
    "canonicalize",
    "canonical_key",
    "underlying",
    "close_key",
    "split_key",
    "normalize_list",
]
