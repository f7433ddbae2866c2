"""
Configuration - YAML settings file plus environment overrides.

Settings are validated with pydantic once at startup and then turned into
the plain dataclass configs each component takes, so components never see
pydantic or YAML.

Environment overrides (highest precedence):
    REPOSCOUT_DB_PATH
    REPOSCOUT_GITHUB_TOKEN (falls back to GITHUB_TOKEN)
    REPOSCOUT_ANALYSIS_URL
    REPOSCOUT_ANALYSIS_API_KEY
    REPOSCOUT_LOG_LEVEL
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .core.orchestrator import BatchConfig
from .core.rate_limiter import DEFAULT_RESOURCE_LIMITS, RateLimitConfig
from .errors import ConfigError
from .tiering.assigner import TierConfig, TierPolicy
from .tiering.scheduler import SchedulerConfig


DEFAULT_CONFIG_PATH = "reposcout.yaml"

DEFAULT_SEARCH_QUERIES = [
    "topic:ai stars:>10",
    "topic:llm stars:>10",
    "topic:machine-learning stars:>10",
    "language:python topic:ai stars:>50",
    "language:typescript topic:ai stars:>50",
    "topic:agents stars:>20",
    "topic:langchain stars:>20",
]

ENV_OVERRIDES = {
    "REPOSCOUT_DB_PATH": "db_path",
    "REPOSCOUT_GITHUB_TOKEN": "github_token",
    "REPOSCOUT_ANALYSIS_URL": "analysis_url",
    "REPOSCOUT_ANALYSIS_API_KEY": "analysis_api_key",
    "REPOSCOUT_LOG_LEVEL": "log_level",
}


class RateLimitSettings(BaseModel):
    capacity: float = Field(gt=0)
    refill_rate: float = Field(gt=0)
    interval: float = Field(default=60.0, gt=0)


def _default_rate_limits() -> Dict[str, RateLimitSettings]:
    return {
        key: RateLimitSettings(
            capacity=config.capacity,
            refill_rate=config.refill_rate,
            interval=config.interval,
        )
        for key, config in DEFAULT_RESOURCE_LIMITS.items()
    }


def _with_tier_defaults(value: Dict[int, Any], defaults: Dict[int, Any]) -> Dict[int, Any]:
    # A file that only tunes one tier keeps defaults for the others
    unknown = sorted(set(value) - set(defaults))
    if unknown:
        raise ValueError(f"unknown tiers: {unknown}")
    merged = dict(defaults)
    merged.update(value)
    return merged


class TierSettings(BaseModel):
    policy: Literal["threshold", "percentile"] = "percentile"
    tier1_min_stars: int = 100
    tier1_min_growth: float = 10.0
    tier2_min_stars: int = 50
    tier2_min_growth: float = 5.0
    tier1_fraction: float = 0.15
    tier2_cumulative_fraction: float = 0.50
    min_population_for_percentile: int = 20
    cadence_hours: Dict[int, float] = Field(default_factory=lambda: {1: 6.0, 2: 24.0, 3: 168.0})

    @field_validator("cadence_hours")
    @classmethod
    def _fill_cadences(cls, value: Dict[int, float]) -> Dict[int, float]:
        return _with_tier_defaults(value, TierConfig().cadence_hours)


class SchedulerSettings(BaseModel):
    budget_seconds: float = Field(default=45.0, gt=0)
    tier_batch_sizes: Dict[int, int] = Field(default_factory=lambda: {1: 10, 2: 20, 3: 30})
    deep_scan_tiers: List[int] = Field(default_factory=lambda: [1])
    analysis_timeout: float = Field(default=30.0, gt=0)

    @field_validator("tier_batch_sizes")
    @classmethod
    def _fill_batch_sizes(cls, value: Dict[int, int]) -> Dict[int, int]:
        return _with_tier_defaults(value, SchedulerConfig().tier_batch_sizes)


class BatchSettings(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    item_timeout: float = Field(default=120.0, gt=0)
    concurrency: int = Field(default=1, ge=1)
    analysis_cache_hours: float = Field(default=24.0, ge=0)
    eta_window: int = Field(default=10, ge=1)
    max_runtime: Optional[float] = Field(default=1800.0, gt=0)
    min_success_rate: float = Field(default=0.5, ge=0, le=1)
    health_min_items: int = Field(default=5, ge=0)
    max_consecutive_failures: int = Field(default=5, ge=0)
    delay_between_items: float = Field(default=0.0, ge=0)


class DiscoverySettings(BaseModel):
    queries: List[str] = Field(default_factory=lambda: list(DEFAULT_SEARCH_QUERIES))
    per_page: int = Field(default=30, ge=1, le=100)


class Settings(BaseModel):
    """Validated application settings"""
    db_path: str = "data/reposcout.db"
    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    analysis_url: Optional[str] = None
    analysis_api_key: Optional[str] = None
    log_level: str = "INFO"
    log_json: bool = False

    rate_limits: Dict[str, RateLimitSettings] = Field(default_factory=_default_rate_limits)
    tiers: TierSettings = Field(default_factory=TierSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return level

    @field_validator("rate_limits")
    @classmethod
    def _keep_default_keys(cls, value: Dict[str, RateLimitSettings]) -> Dict[str, RateLimitSettings]:
        # A file that only tunes one key keeps defaults for the others
        merged = _default_rate_limits()
        merged.update(value)
        return merged

    # ------------------------------------------------------------------
    # Component configs
    # ------------------------------------------------------------------

    def rate_limit_configs(self) -> Dict[str, RateLimitConfig]:
        return {
            key: RateLimitConfig(
                capacity=limit.capacity,
                refill_rate=limit.refill_rate,
                interval=limit.interval,
            )
            for key, limit in self.rate_limits.items()
        }

    def tier_config(self) -> TierConfig:
        tiers = self.tiers
        try:
            return TierConfig(
                policy=TierPolicy(tiers.policy),
                tier1_min_stars=tiers.tier1_min_stars,
                tier1_min_growth=tiers.tier1_min_growth,
                tier2_min_stars=tiers.tier2_min_stars,
                tier2_min_growth=tiers.tier2_min_growth,
                tier1_fraction=tiers.tier1_fraction,
                tier2_cumulative_fraction=tiers.tier2_cumulative_fraction,
                min_population_for_percentile=tiers.min_population_for_percentile,
                cadence_hours=dict(tiers.cadence_hours),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid tiers settings: {e}") from e

    def scheduler_config(self) -> SchedulerConfig:
        scheduler = self.scheduler
        try:
            return SchedulerConfig(
                budget_seconds=scheduler.budget_seconds,
                tier_batch_sizes=dict(scheduler.tier_batch_sizes),
                deep_scan_tiers=tuple(scheduler.deep_scan_tiers),
                analysis_timeout=scheduler.analysis_timeout,
            )
        except ValueError as e:
            raise ConfigError(f"Invalid scheduler settings: {e}") from e

    def batch_config(self) -> BatchConfig:
        return BatchConfig(**self.batch.model_dump())


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def load_settings(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Load settings from YAML and the environment.

    Args:
        path: Config file. When None, ./reposcout.yaml is used if it exists.
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated Settings

    Raises:
        ConfigError: Unreadable file, bad YAML or invalid values
    """
    env = os.environ if env is None else env

    if path is not None:
        data = _read_yaml(Path(path))
    elif Path(DEFAULT_CONFIG_PATH).is_file():
        data = _read_yaml(Path(DEFAULT_CONFIG_PATH))
    else:
        data = {}

    if "GITHUB_TOKEN" in env and "github_token" not in data:
        data["github_token"] = env["GITHUB_TOKEN"]
    for variable, key in ENV_OVERRIDES.items():
        if env.get(variable):
            data[key] = env[variable]

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
