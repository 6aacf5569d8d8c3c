"""
Engine configuration.

Defaults live in the dataclasses below; `config/settings.yaml` can override
any of them. Values of the form ${VAR} are expanded from the environment.

Safety bounds that are invariants (the authority clamp, the reduced-live size
step) are module constants in their own modules and are not configurable.
"""

import os
import re
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional
import structlog
import yaml

logger = structlog.get_logger(__name__)


@dataclass
class PortfolioConfig:
    """Portfolio construction parameters."""
    max_correlation: float = 0.4
    min_correlation_observations: int = 10
    volatility_floor: float = 0.001
    periods_per_year: int = 48 * 252  # M30 bars
    shock_concentration: float = 0.80
    default_concentration: float = 0.60
    nominal_base: float = 1000.0
    weight_tolerance: float = 1e-9
    starting_equity: float = 1000.0
    pip_value: float = 1.0


@dataclass
class CollaborationConfig:
    """Pair classification and authority parameters."""
    min_paired_trades: int = 40
    veto_precision_threshold: float = 0.60
    false_veto_max: float = 0.40
    synergy_threshold: float = 1.25
    conflict_threshold: float = 0.80
    pairing_window_minutes: int = 5
    min_solo_trades: int = 20
    max_base_shift: float = 0.5
    min_context_fraction: float = 0.5


@dataclass
class FallbackConfig:
    """Fallback guardian parameters."""
    degradation_threshold: float = 0.20


@dataclass
class UnlockCriteria:
    """Objective requirements for moving one rung up the deployment ladder."""
    min_shadow_trades: int
    min_expectancy_ratio: float
    max_dd_ratio: float
    min_profitable_sessions: int
    min_days_without_drift: int


@dataclass
class DeploymentConfig:
    """Deployment ladder parameters."""
    shadow_to_reduced: UnlockCriteria = field(default_factory=lambda: UnlockCriteria(
        min_shadow_trades=150,
        min_expectancy_ratio=1.3,
        max_dd_ratio=0.70,
        min_profitable_sessions=3,
        min_days_without_drift=7,
    ))
    reduced_to_live: UnlockCriteria = field(default_factory=lambda: UnlockCriteria(
        min_shadow_trades=300,
        min_expectancy_ratio=1.2,
        max_dd_ratio=0.60,
        min_profitable_sessions=4,
        min_days_without_drift=14,
    ))
    demotion_max_dd_ratio: float = 1.0
    demotion_min_expectancy_ratio: float = 0.8
    demotion_min_trades: int = 50


@dataclass
class FetchConfig:
    """Trade ledger pagination."""
    page_size: int = 1000
    timeout_seconds: float = 30.0


@dataclass
class StorageConfig:
    """Persistence backends."""
    duckdb_path: str = "data/ensemble_governor.duckdb"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0


@dataclass
class EngineConfig:
    """Top-level configuration."""
    log_level: str = "INFO"
    portfolio: PortfolioConfig = field(default_factory=PortfolioConfig)
    collaboration: CollaborationConfig = field(default_factory=CollaborationConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def expand_env_vars(value: Any) -> Any:
    """Expand ${VAR} references in string values; unknown vars are left as-is."""
    if isinstance(value, str) and "${" in value:
        def replace_env(match):
            return os.environ.get(match.group(1), match.group(0))
        return re.sub(r"\$\{([^}]+)\}", replace_env, value)
    return value


def _coerce(current: Any, value: Any) -> Any:
    """Cast a YAML scalar to the type of the default it replaces."""
    value = expand_env_vars(value)
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str):
        return str(value)
    return value


def _overlay(target: Any, overrides: dict, path: str = "") -> None:
    """Apply a nested dict of overrides onto a dataclass instance in place."""
    known = {f.name for f in fields(target)}

    for key, value in overrides.items():
        dotted = f"{path}{key}"
        if key not in known:
            logger.warning("unknown_config_key", key=dotted)
            continue

        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ValueError(f"Config section '{dotted}' must be a mapping")
            _overlay(current, value, path=f"{dotted}.")
        else:
            setattr(target, key, _coerce(current, value))


def load_config(path: Optional[str] = "config/settings.yaml") -> EngineConfig:
    """
    Load configuration from a YAML file.

    Missing files fall back to defaults (with a warning), matching how the
    rest of the runtime treats optional config.
    """
    config = EngineConfig()

    if path is None:
        return config

    config_path = Path(path)
    if not config_path.exists():
        logger.warning("config_not_found_using_defaults", path=str(path))
        return config

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    _overlay(config, raw)
    logger.info("config_loaded", path=str(path))
    return config
