from pathlib import Path

from landedcost.config import DEFAULT_INSURANCE_RATE, Settings

ENV_NAMES = [
    "TARIFF_BASE_URL",
    "TARIFF_USER",
    "TARIFF_PASS",
    "FX_LOCAL_PER_USD",
    "INSURANCE_RATE",
    "RESOLVER_RETRIES",
    "OPENAI_API_KEY",
    "REDIS_URL",
]


def _clear(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_environment(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.setenv("LC_DATA_ROOT", str(tmp_path))

    settings = Settings.from_env()

    assert settings.has_credentials is False
    assert settings.fx_local_per_usd is None
    assert settings.insurance_rate == DEFAULT_INSURANCE_RATE
    assert settings.openai_api_key is None
    assert settings.sessions_path == Path(tmp_path) / "data" / "quote_drafts.jsonl"


def test_environment_overrides(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("TARIFF_BASE_URL", "https://tariff.example/")
    monkeypatch.setenv("TARIFF_USER", "broker")
    monkeypatch.setenv("TARIFF_PASS", "secret")
    monkeypatch.setenv("FX_LOCAL_PER_USD", "1150")
    monkeypatch.setenv("INSURANCE_RATE", "0.02")
    monkeypatch.setenv("RESOLVER_RETRIES", "-4")

    settings = Settings.from_env()

    assert settings.base_url == "https://tariff.example"
    assert settings.login_url == "https://tariff.example/login.php"
    assert settings.has_credentials is True
    assert settings.fx_local_per_usd == 1150.0
    assert settings.insurance_rate == 0.02
    assert settings.resolver_retries == 0


def test_out_of_range_insurance_falls_back(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("INSURANCE_RATE", "0.5")
    assert Settings.from_env().insurance_rate == DEFAULT_INSURANCE_RATE
    monkeypatch.setenv("INSURANCE_RATE", "abc")
    assert Settings.from_env().insurance_rate == DEFAULT_INSURANCE_RATE

