"""
Configuration Validation Module

Validates app.yaml and venues.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    """Process mode"""
    mode: str = Field(default="PAPER", pattern="^(PAPER|LIVE|paper|live)$", description="Trading mode")


class LoggingConfig(BaseModel):
    """Logging setup"""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$", description="Root log level")
    file: str = Field(default="logs/venue-rebalancer.log", min_length=1, description="Log file path")


class LoopConfig(BaseModel):
    """Position adjuster cadence and guard parameters"""
    interval_seconds: float = Field(default=3.0, gt=0, description="Seconds between ticks")
    settle_seconds: float = Field(default=5.0, ge=0, description="Delay before checking balances")
    cooldown_seconds: float = Field(default=5.0, ge=0, description="Delay before clearing the running guard")
    warmup_ticks: int = Field(default=30, ge=0, description="Ticks skipped between rebalancing passes")
    max_overlap_retries: int = Field(default=30, ge=0, description="Overlapping ticks before force-clearing the guard")
    max_workers: int = Field(default=4, gt=0, description="Venue order worker threads")


class StatsConfig(BaseModel):
    """Spread statistics tracker"""
    enabled: bool = Field(default=True, description="Derive the adaptive threshold")
    window_seconds: float = Field(default=180.0, gt=0, description="Trailing window length")
    min_threshold: float = Field(default=0.25, description="Floor for min_target_profit_percent")
    precision: int = Field(default=3, ge=0, le=10, description="Decimal places of the threshold")
    interval_seconds: float = Field(default=3.0, gt=0, description="Seconds between feed polls")


class StateConfig(BaseModel):
    """Shared state file"""
    file: str = Field(default="data/.state.json", min_length=1, description="State JSON path")
    overrides_file: Optional[str] = Field(default=None, description="Published overrides JSON path")


class AlertsConfig(BaseModel):
    """Webhook alerts"""
    webhook_url: Optional[str] = Field(default=None, description="Webhook URL (supports ${ENV})")
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL", description="Env var holding the webhook URL")
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$", description="Minimum severity")
    dry_run: bool = Field(default=False, description="Log alerts instead of sending")
    timeout_seconds: float = Field(default=5.0, gt=0, description="Webhook timeout")
    dedupe_seconds: float = Field(default=60.0, ge=0, description="Dedupe window")


class MonitoringConfig(BaseModel):
    """Metrics and alerting"""
    metrics_enabled: bool = Field(default=False, description="Expose Prometheus metrics")
    metrics_port: int = Field(default=9100, gt=0, lt=65536, description="Prometheus port")
    alerts_enabled: bool = Field(default=False, description="Send webhook alerts")
    alerts: AlertsConfig = Field(default_factory=AlertsConfig, description="Alert settings")


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== Venues Schema =====
class VenueEntry(BaseModel):
    """One venue"""
    venue: str = Field(min_length=1, description="Venue id")
    enabled: bool = Field(default=True, description="Rebalance this venue")
    margin_mode: str = Field(pattern="^(cash|net_out|netout|Cash|NetOut)$", description="Cash or net-out margin")
    max_long_position: float = Field(ge=0, description="Target max long base position")
    # Periods are parsed at runtime; invalid entries are logged and ignored there
    no_trade_periods: List[Any] = Field(default_factory=list, description="[start, end] ISO-8601 pairs")
    api_key_env: Optional[str] = Field(default=None, description="Env var holding the API key")
    api_secret_env: Optional[str] = Field(default=None, description="Env var holding the API secret")
    buy_in_quote: bool = Field(default=False, description="Market buys are sized in quote notional")
    paper_position: float = Field(default=0.0, description="Starting position in PAPER mode")
    paper_rate: float = Field(default=0.0, ge=0, description="Fill rate in PAPER mode")


class VenuesSchema(BaseModel):
    """Complete venues.yaml schema"""
    symbol: str = Field(default="BTC/JPY", min_length=1, description="Traded symbol")
    venues: List[VenueEntry] = Field(min_length=1, description="Venue list")

    @field_validator('venues')
    @classmethod
    def validate_unique_venues(cls, v: List[VenueEntry]) -> List[VenueEntry]:
        """Venue ids must be unique"""
        seen = set()
        for entry in v:
            if entry.venue in seen:
                raise ValueError(f"Duplicate venue id: {entry.venue}")
            seen.add(entry.venue)
        return v


def load_yaml_file(path: Path) -> Dict[str, Any]:
    """Load a YAML file, raising FileNotFoundError if missing"""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: Expected a mapping at top level - {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Args:
        config_dir: Path to config directory

    Returns:
        List of error messages (empty if valid)
    """
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_venues(config_dir: Path) -> List[str]:
    """Validate venues.yaml against schema."""
    return _validate_file(config_dir, "venues.yaml", VenuesSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Cross-file checks run after schema validation passes.

    - LIVE mode requires credential env var names on every enabled venue
    - At least one venue must be enabled
    """
    errors = []
    app = load_yaml_file(config_dir / "app.yaml")
    venues = load_yaml_file(config_dir / "venues.yaml")

    mode = str((app.get("app") or {}).get("mode", "PAPER")).upper()
    entries = venues.get("venues") or []
    enabled = [v for v in entries if v.get("enabled", True)]

    if not enabled:
        errors.append("venues.yaml: no enabled venues")

    if mode == "LIVE":
        for entry in enabled:
            if not entry.get("api_key_env") or not entry.get("api_secret_env"):
                errors.append(
                    f"venues.yaml: {entry.get('venue')}: LIVE mode requires api_key_env and api_secret_env"
                )
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_venues(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
