from __future__ import annotations

from pathlib import Path

import pytest

from copytrade.errors import ValidationError
from copytrade.models import MarginType
from copytrade.runtime_config import load_config, load_runtime_config

SAMPLE = """
broker:
  testnet: true
  recv_window: 5000
feed:
  base_url: https://feed.test/api/
  marker: 7
reconciliation:
  tolerance: 0.1
executor:
  quantity_tolerance: 0.02
scheduler:
  workers: 2
defaults:
  follow_options:
    totalMargin: 80
    maxLeverage: 10
tasks:
  - agent_id: deepseek-chat-v3.1
    interval_seconds: 15
    options:
      riskOnly: false
      symbolTolerances:
        DOGEUSDT: 0.03
  - agent_id: qwen3-max
    start: false
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("BINANCE_API_KEY", "BINANCE_API_SECRET", "BINANCE_TESTNET", "DRY_RUN", "NOF1_API_BASE", "COPYTRADE_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    load_runtime_config.cache_clear()
    yield
    load_runtime_config.cache_clear()


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "copytrade.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_full_config_is_parsed(tmp_path) -> None:
    cfg = load_config(_write(tmp_path, SAMPLE), dotenv=False)

    assert cfg.broker.testnet is True
    assert cfg.broker.dry_run is False
    assert cfg.broker.recv_window == 5000
    assert cfg.broker.has_credentials is False
    assert cfg.feed.base_url == "https://feed.test/api"
    assert cfg.feed.marker == 7
    assert cfg.reconciliation.tolerance == 0.1
    assert cfg.executor.quantity_tolerance == 0.02
    assert cfg.scheduler.workers == 2
    assert cfg.default_options.total_margin == 80
    assert cfg.default_options.margin_type is MarginType.CROSSED

    first, second = cfg.tasks
    assert first.agent_id == "deepseek-chat-v3.1"
    assert first.interval_seconds == 15
    assert first.options.risk_only is False
    assert first.options.max_leverage == 10
    assert first.options.tolerance_for("DOGEUSDT") == 0.03
    assert first.start is True
    assert second.interval_seconds == 30
    assert second.options.risk_only is True
    assert second.start is False


def test_environment_overrides_yaml(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("BINANCE_API_KEY", " key ")
    monkeypatch.setenv("BINANCE_API_SECRET", "secret")
    monkeypatch.setenv("BINANCE_TESTNET", "0")
    monkeypatch.setenv("DRY_RUN", "yes")
    monkeypatch.setenv("NOF1_API_BASE", "http://localhost:9000/api")

    cfg = load_config(_write(tmp_path, SAMPLE), dotenv=False)

    assert cfg.broker.api_key == "key"
    assert cfg.broker.has_credentials
    assert cfg.broker.testnet is False
    assert cfg.broker.dry_run is True
    assert cfg.feed.base_url == "http://localhost:9000/api"


def test_missing_file_means_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("COPYTRADE_CONFIG", str(tmp_path / "absent.yaml"))
    cfg = load_config(dotenv=False)
    assert cfg.tasks == []
    assert cfg.default_options.total_margin == 50
    assert cfg.reconciliation.tolerance == 0.05


@pytest.mark.parametrize(
    "text",
    [
        "broker: [unclosed",
        "- just\n- a list\n",
        "tasks:\n  - agent_id: a\n    interval_seconds: 2\n",
        "tasks:\n  - agent_id: a\n    options:\n      leverage: 3\n",
        "reconciliation:\n  tolerance: -1\n",
        "defaults:\n  follow_options:\n    priceTolerance: 2\n",
    ],
)
def test_invalid_config_raises(tmp_path, text) -> None:
    with pytest.raises(ValidationError):
        load_config(_write(tmp_path, text), dotenv=False)


def test_config_is_cached_per_path(tmp_path) -> None:
    path = _write(tmp_path, SAMPLE)
    first = load_runtime_config(path)
    path.write_text("tasks: []\n", encoding="utf-8")
    assert load_runtime_config(path) is first
    load_runtime_config.cache_clear()
    assert load_runtime_config(path) == {"tasks": []}
