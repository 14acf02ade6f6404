"""Tests for portefeuille.core.config."""

import os

import pytest
from pydantic import ValidationError

from portefeuille.core.config import (
    CacheConfig,
    LedgerConfig,
    PortefeuilleConfig,
    PricingConfig,
    UpstreamConfig,
    load_config,
)
from portefeuille.core.exceptions import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("PORTEFEUILLE_"):
            monkeypatch.delenv(key, raising=False)
    # Keep a stray ./portefeuille.yml out of the way
    monkeypatch.chdir(tmp_path)


class TestPricingConfig:
    def test_defaults(self):
        c = PricingConfig()
        assert c.reference_currency == "EUR"
        assert c.spot_cache_seconds == 30
        assert c.conversion_cache_seconds == 60
        assert c.session_ttl_seconds == 1800

    def test_currency_is_upper_cased(self):
        assert PricingConfig(reference_currency="usd").reference_currency == "USD"

    def test_currency_must_be_three_letters(self):
        with pytest.raises(ValidationError, match="3-letter"):
            PricingConfig(reference_currency="EURO")

    def test_conversion_cache_cannot_be_shorter_than_spot(self):
        with pytest.raises(ValidationError, match="conversion_cache_seconds"):
            PricingConfig(spot_cache_seconds=120, conversion_cache_seconds=60)

    def test_zero_duration_rejected(self):
        with pytest.raises(ValidationError, match=">= 1"):
            PricingConfig(session_ttl_seconds=0)


class TestOtherSections:
    def test_cache_defaults(self):
        c = CacheConfig()
        assert c.enabled is True
        assert c.port == 6379
        assert c.price_ttl_seconds == 3600

    def test_cache_ttl_positive(self):
        with pytest.raises(ValidationError):
            CacheConfig(price_ttl_seconds=0)

    def test_rate_limits_positive(self):
        with pytest.raises(ValidationError, match="rate limits"):
            UpstreamConfig(yahoo_rate_limit=0)

    def test_pairing_window_default(self):
        assert LedgerConfig().pairing_window_seconds == 120

    def test_frozen(self):
        c = PortefeuilleConfig()
        with pytest.raises(ValidationError):
            c.pricing = PricingConfig()


class TestLoadConfig:
    def test_defaults_without_file(self):
        config = load_config()
        assert config.pricing.reference_currency == "EUR"
        assert config.storage.sqlite_path == "./data/portefeuille.db"

    def test_yaml_loading(self, tmp_path):
        yaml_file = tmp_path / "custom.yml"
        yaml_file.write_text("cache:\n  enabled: false\n  port: 6380\nledger:\n  pairing_window_seconds: 90\n")
        config = load_config(config_path=str(yaml_file))
        assert config.cache.enabled is False
        assert config.cache.port == 6380
        assert config.ledger.pairing_window_seconds == 90

    def test_default_file_in_working_directory(self, tmp_path):
        (tmp_path / "portefeuille.yml").write_text("pricing:\n  reference_currency: usd\n")
        assert load_config().pricing.reference_currency == "USD"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        yaml_file = tmp_path / "custom.yml"
        yaml_file.write_text("cache:\n  port: 6380\n")
        monkeypatch.setenv("PORTEFEUILLE_CACHE__PORT", "6390")
        config = load_config(config_path=str(yaml_file))
        assert config.cache.port == 6390

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        yaml_file = tmp_path / "elsewhere.yml"
        yaml_file.write_text("upstream:\n  yahoo_rate_limit: 2\n")
        monkeypatch.setenv("PORTEFEUILLE_CONFIG", str(yaml_file))
        assert load_config().upstream.yahoo_rate_limit == 2

    def test_missing_file_raises(self):
        with pytest.raises(ConfigError, match="not found"):
            load_config(config_path="/nonexistent/portefeuille.yml")

    def test_non_mapping_yaml_raises(self, tmp_path):
        yaml_file = tmp_path / "list.yml"
        yaml_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(config_path=str(yaml_file))

    def test_validation_error_wrapped(self, monkeypatch):
        monkeypatch.setenv("PORTEFEUILLE_PRICING__REFERENCE_CURRENCY", "EURO")
        with pytest.raises(ConfigError):
            load_config()


    def test_validation_error_names_field(self, monkeypatch):
        monkeypatch.setenv("PORTEFEUILLE_CACHE__PORT", "not-a-port")
        with pytest.raises(ConfigError) as exc_info:
            load_config()
        assert exc_info.value.context == {"field": "cache.port", "value": "not-a-port"}

    def test_default_yaml_extension(self, tmp_path):
        (tmp_path / "portefeuille.yaml").write_text("ledger:\n  pairing_window_seconds: 30\n")
        assert load_config().ledger.pairing_window_seconds == 30


class TestEnvOverrides:
    def test_numeric_password_stays_string(self, monkeypatch):
        monkeypatch.setenv("PORTEFEUILLE_CACHE__PASSWORD", "0123")
        assert load_config().cache.password == "0123"

    def test_booleans_and_numbers_coerced(self, monkeypatch):
        monkeypatch.setenv("PORTEFEUILLE_CACHE__ENABLED", "false")
        monkeypatch.setenv("PORTEFEUILLE_CACHE__CONNECT_TIMEOUT", "1.5")
        config = load_config()
        assert config.cache.enabled is False
        assert config.cache.connect_timeout == 1.5

    def test_merges_into_yaml_section(self, tmp_path, monkeypatch):
        yaml_file = tmp_path / "custom.yml"
        yaml_file.write_text("cache:\n  host: redis\n")
        monkeypatch.setenv("PORTEFEUILLE_CACHE__DB", "3")
        config = load_config(config_path=str(yaml_file))
        assert config.cache.host == "redis"
        assert config.cache.db == 3

    def test_unknown_field_rejected(self, monkeypatch):
        monkeypatch.setenv("PORTEFEUILLE_CACHE__PROT", "6380")
        with pytest.raises(ConfigError, match="PORTEFEUILLE_CACHE__PROT") as exc_info:
            load_config()
        assert exc_info.value.context["field"] == "PORTEFEUILLE_CACHE__PROT"

    @pytest.mark.parametrize("key", ["PORTEFEUILLE_CACHE", "PORTEFEUILLE_BROKER__HOST"])
    def test_unknown_section_rejected(self, monkeypatch, key):
        monkeypatch.setenv(key, "x")
        with pytest.raises(ConfigError, match="Unknown setting"):
            load_config()

    def test_config_var_itself_skipped(self, monkeypatch, tmp_path):
        yaml_file = tmp_path / "x.yml"
        yaml_file.write_text("cache:\n  db: 2\n")
        monkeypatch.setenv("PORTEFEUILLE_CONFIG", str(yaml_file))
        assert load_config().cache.db == 2

    def test_password_redacted_in_error(self, tmp_path):
        yaml_file = tmp_path / "custom.yml"
        yaml_file.write_text("cache:\n  password: [hunter2]\n")
        with pytest.raises(ConfigError) as exc_info:
            load_config(config_path=str(yaml_file))
        assert exc_info.value.context == {"field": "cache.password", "value": "***"}
