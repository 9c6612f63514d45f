from eod_portfolio.config import AppSettings


def test_api_keys_are_masked_for_logging():
    settings = AppSettings(fmp_api_key="secret", marketstack_api_key=None)
    dumped = settings.dict_for_logging()
    assert dumped["fmp_api_key"] == "***"
    assert dumped["marketstack_api_key"] is None
    assert dumped["option_retention_days"] == 730


def test_min_interval_follows_requests_per_minute():
    assert AppSettings(provider_requests_per_minute=30).provider_min_interval_seconds == 2.0
