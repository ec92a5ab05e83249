"""
Tests for prop_ledger/config.py — YAML loading, deep merge and env override.
"""

from decimal import Decimal
from pathlib import Path

import pytest

from prop_ledger.config import AppConfig, _deep_merge, load_config
from prop_ledger.ledger.schemas import Phase


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    (tmp_path / "default.yaml").write_text(
        "ledger:\n"
        "  db_path: data/ledger.db\n"
        "reconciliation:\n"
        "  open_time_tolerance_seconds: 0\n"
        "  stale_after_missed_snapshots: 2\n",
        encoding="utf-8",
    )
    (tmp_path / "account.yaml").write_text(
        "reconciliation:\n"
        "  naive_timestamp_tz: Europe/Athens\n"
        "accounts:\n"
        "  - account_id: '2958'\n"
        "    initial_balance: '50000'\n"
        "    template_id: prop-number-one-50k\n",
        encoding="utf-8",
    )
    return tmp_path


class TestLoadConfig:
    def test_deep_merge_keeps_untouched_keys(self) -> None:
        merged = _deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}

    def test_account_overrides_default(self, config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PROP_LEDGER_DB_PATH", raising=False)
        config = load_config(config_dir / "account.yaml")
        assert config.ledger.db_path == "data/ledger.db"
        assert config.reconciliation.stale_after_missed_snapshots == 2
        assert config.reconciliation.naive_timestamp_tz == "Europe/Athens"
        [seed] = config.accounts
        assert seed.initial_balance == Decimal("50000")
        assert seed.phase == Phase.PHASE_1

    def test_env_overrides_db_path(self, config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROP_LEDGER_DB_PATH", "/tmp/override.db")
        config = load_config(config_dir / "account.yaml")
        assert config.ledger.db_path == "/tmp/override.db"

    def test_missing_files_give_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PROP_LEDGER_DB_PATH", raising=False)
        config = load_config(tmp_path / "absent.yaml")
        assert config == AppConfig()

    def test_negative_tolerance_rejected(self, tmp_path: Path) -> None:
        (tmp_path / "default.yaml").write_text(
            "reconciliation:\n  open_time_tolerance_seconds: -1\n", encoding="utf-8"
        )
        with pytest.raises(ValueError):
            load_config(tmp_path / "default.yaml")
