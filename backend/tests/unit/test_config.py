"""
Unit Tests for settings and logging configuration
"""

import json
import logging
from decimal import Decimal

import pytest

from conftest import ETH_DEPOSIT_ADDRESS, TRON_DEPOSIT_ADDRESS
from luna_deposits.chains.assets import Asset, Network
from luna_deposits.core.config import Settings, validate_settings
from luna_deposits.core.logging_config import JsonFormatter, TextFormatter


@pytest.mark.unit
def test_min_deposit_in_minor_units(test_settings):
    assert test_settings.min_deposit_minor(Asset.USDT_TRC20) == 1_000_000
    assert test_settings.min_deposit_minor(Asset.ETH) == 10 ** 15


@pytest.mark.unit
def test_min_deposit_with_too_many_decimals_is_rejected():
    settings = Settings(_env_file=None, MIN_DEPOSIT_USDT_TRC20=Decimal("0.0000001"))
    with pytest.raises(ValueError):
        settings.min_deposit_minor(Asset.USDT_TRC20)


@pytest.mark.unit
def test_deposit_address_per_network(test_settings):
    assert test_settings.deposit_address_for(Asset.USDT_TRC20) == TRON_DEPOSIT_ADDRESS
    assert test_settings.deposit_address_for(Asset.ETH) == ETH_DEPOSIT_ADDRESS
    assert Settings(_env_file=None).deposit_address_for(Asset.BNB_BSC) is None


@pytest.mark.unit
def test_chain_ids(test_settings):
    assert test_settings.chain_id_for(Network.ETHEREUM) == 1
    assert test_settings.chain_id_for(Network.BSC) == 56
    assert test_settings.chain_id_for(Network.TRON) is None


@pytest.mark.unit
def test_allowed_origins_list():
    settings = Settings(_env_file=None, ALLOWED_ORIGINS="https://a.example, https://b.example")
    assert settings.allowed_origins_list == ["https://a.example", "https://b.example"]


@pytest.mark.unit
@pytest.mark.parametrize("overrides, message", [
    ({"DATABASE_URL": "sqlite:///./prod.db", "ALLOWED_ORIGINS": "https://luna.example"}, "SQLite"),
    ({"DATABASE_URL": "postgresql://db/luna", "ALLOWED_ORIGINS": "*"}, "CORS wildcard"),
])
def test_production_rejects_unsafe_settings(overrides, message):
    settings = Settings(_env_file=None, ENVIRONMENT="production", **overrides)
    with pytest.raises(ValueError, match=message):
        validate_settings(settings)


@pytest.mark.unit
def test_production_accepts_safe_settings():
    settings = Settings(
        _env_file=None,
        ENVIRONMENT="production",
        DATABASE_URL="postgresql://db/luna",
        ALLOWED_ORIGINS="https://luna.example",
    )
    assert validate_settings(settings) is settings


def _record(**extra):
    record = logging.LogRecord(
        name="luna_deposits.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Deposit settled",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.unit
def test_json_formatter_includes_extra_fields():
    payload = json.loads(JsonFormatter().format(_record(intent_id="abc", amount=Decimal("50.000000"))))

    assert payload["message"] == "Deposit settled"
    assert payload["level"] == "INFO"
    assert payload["intent_id"] == "abc"
    assert payload["amount"] == "50.000000"


@pytest.mark.unit
def test_text_formatter_appends_extra_fields():
    line = TextFormatter("%(message)s").format(_record(intent_id="abc"))
    assert line == "Deposit settled | intent_id=abc"
