"""EOD price reconciliation and FIFO portfolio valuation."""

from .symbols import CanonicalSymbol, canonicalize, close_key, split_key

__version__ = "0.1.0"

__all__ = [
    "CanonicalSymbol",
    "canonicalize",
    "close_key",
    "split_key",
]
