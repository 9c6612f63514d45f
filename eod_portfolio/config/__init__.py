"""Configuration package for the EOD reconciliation pipeline."""

from .settings import DEFAULT_PROVIDER_ORDER, DEFAULT_TIMEZONE, AppSettings, get_settings

__all__ = ["AppSettings", "DEFAULT_PROVIDER_ORDER", "DEFAULT_TIMEZONE", "get_settings"]
