import pytest

from soltrade.config import load_settings
from soltrade.errors import ValidationError
from soltrade.strategy import parse_strategy_config
from soltrade.strategy.interfaces import DcaConfig, GridSellingConfig


def test_parse_accepts_camel_and_snake_case() -> None:
    camel = parse_strategy_config(
        {
            "type": "DCA",
            "params": {"walletId": "w1", "tokenAddress": "T", "buyAmount": 1, "intervalHours": 2, "totalBuys": 3},
        }
    )
    snake = parse_strategy_config(
        {
            "type": "DCA",
            "params": {"wallet_id": "w1", "token_address": "T", "buy_amount": 1, "interval_hours": 2, "total_buys": 3},
        }
    )
    assert isinstance(camel, DcaConfig)
    assert camel.params == snake.params
    assert camel.params.slippage == 2.0


@pytest.mark.parametrize(
    "raw, message",
    [
        ({"params": {"a": 1}}, "Strategy type is required"),
        ({"type": "MOON", "params": {"a": 1}}, "Invalid strategy type: MOON"),
        ({"type": "DCA"}, "Strategy params are required"),
        ("DCA", "must be an object"),
    ],
)
def test_parse_rejects_malformed_configs(raw, message) -> None:
    with pytest.raises(ValidationError, match=message):
        parse_strategy_config(raw)


def test_grid_targets_must_not_oversell() -> None:
    ok = parse_strategy_config(
        {
            "type": "GRID_SELLING",
            "params": {
                "positionId": "p1",
                "targets": [{"priceMultiplier": 2, "sellPercent": 60}, {"priceMultiplier": 3, "sellPercent": 40}],
            },
        }
    )
    assert isinstance(ok, GridSellingConfig)

    with pytest.raises(ValidationError, match="more than 100%"):
        parse_strategy_config(
            {
                "type": "GRID_SELLING",
                "params": {
                    "positionId": "p1",
                    "targets": [{"priceMultiplier": 2, "sellPercent": 60}, {"priceMultiplier": 3, "sellPercent": 50}],
                },
            }
        )
    with pytest.raises(ValidationError):
        parse_strategy_config({"type": "GRID_SELLING", "params": {"positionId": "p1", "targets": []}})


def test_auto_buy_band_and_trailing_percent_are_validated() -> None:
    with pytest.raises(ValidationError, match="maxLiquidity"):
        parse_strategy_config(
            {
                "type": "AUTO_BUY_NEW_POOLS",
                "params": {"walletId": "w1", "minLiquidity": 10, "maxLiquidity": 5, "buyAmount": 1},
            }
        )
    with pytest.raises(ValidationError):
        parse_strategy_config({"type": "TRAILING_STOP", "params": {"positionId": "p1", "trailPercent": 100}})


def test_load_settings_merges_yaml_and_env(tmp_path, monkeypatch) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "executor:\n  max_trades_per_window: 3\nmarket:\n  ws_reconnect:\n    max_retries: 9\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GATEWAY__API_KEY", "secret")
    monkeypatch.setenv("EXECUTOR__WINDOW_SECONDS", "30")

    settings = load_settings(str(path))

    assert settings.executor.max_trades_per_window == 3
    assert settings.executor.window_seconds == 30
    assert settings.market.ws_reconnect.max_retries == 9
    assert settings.market.ws_reconnect.base_delay_ms == 5000
    assert settings.gateway.api_key == "secret"
    assert settings.positions.price_cache_ttl_s == 5


def test_load_settings_rejects_bad_window(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("executor:\n  window_seconds: 0\n", encoding="utf-8")
    with pytest.raises(Exception):
        load_settings(str(path))
