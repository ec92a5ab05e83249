"""
Pydantic-based configuration system for prop-ledger.

Loads configuration from YAML files with environment variable overrides.
Usage:
    from prop_ledger.config import load_config
    config = load_config("config/ftmo_50k.yaml")
"""

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, Field

from prop_ledger.ledger.schemas import Phase

# ── Sub-configs ─────────────────────────────────────────────────────────────


class LedgerConfig(BaseModel):
    """Ledger persistence settings."""

    db_path: str = "data/ledger.db"


class ReconciliationConfig(BaseModel):
    """Snapshot merge behaviour — changes here alter ticket identity decisions."""

    open_time_tolerance_seconds: int = Field(
        default=0,
        ge=0,
        description="Open-time match window for partial-closure detection (0 = same second)",
    )
    stale_after_missed_snapshots: int = Field(
        default=2,
        ge=1,
        description="Consecutive snapshots an open record may be absent before it is flagged stale",
    )
    naive_timestamp_tz: str = Field(
        default="UTC", description="Zone applied to EA timestamps that carry no UTC offset"
    )


class TemplatesConfig(BaseModel):
    """Rule template store location."""

    directory: str = "config/templates"


class JournalConfig(BaseModel):
    """Append-only audit journal."""

    enabled: bool = True
    path: str = "data/ledger_journal.jsonl"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: str = "logs/prop_ledger.log"
    rotation: str = "10 MB"
    retention: str = "30 days"


class AccountSeedConfig(BaseModel):
    """Account registered by the CLI on startup (if not already present)."""

    account_id: str
    initial_balance: Decimal
    start_balance: Decimal | None = None
    template_id: str | None = None
    template_version: int | None = None
    timezone: str = "UTC"
    phase: Phase = Phase.PHASE_1


# ── Root Config ─────────────────────────────────────────────────────────────


class AppConfig(BaseModel):
    """Root configuration for prop-ledger."""

    ledger: LedgerConfig = LedgerConfig()
    reconciliation: ReconciliationConfig = ReconciliationConfig()
    templates: TemplatesConfig = TemplatesConfig()
    journal: JournalConfig = JournalConfig()
    logging: LoggingConfig = LoggingConfig()
    accounts: List[AccountSeedConfig] = []


# ── Config Loading ──────────────────────────────────────────────────────────


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base dict."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    config_path: str | Path,
    default_path: str | Path | None = None,
) -> AppConfig:
    """Load configuration from YAML, merging with defaults.

    Args:
        config_path: Path to deployment-specific config.
        default_path: Path to default config. Auto-detected if None.

    Returns:
        Fully resolved AppConfig instance.
    """
    config_path = Path(config_path)

    # Auto-detect default config location
    if default_path is None:
        default_path = config_path.parent / "default.yaml"

    base_data: Dict[str, Any] = {}
    if Path(default_path).exists():
        with open(default_path, "r", encoding="utf-8") as f:
            base_data = yaml.safe_load(f) or {}

    override_data: Dict[str, Any] = {}
    if config_path.exists() and config_path.resolve() != Path(default_path).resolve():
        with open(config_path, "r", encoding="utf-8") as f:
            override_data = yaml.safe_load(f) or {}

    merged = _deep_merge(base_data, override_data)

    # Environment override for the ledger location
    db_override = os.getenv("PROP_LEDGER_DB_PATH")
    if db_override:
        merged = _deep_merge(merged, {"ledger": {"db_path": db_override}})

    return AppConfig(**merged)
