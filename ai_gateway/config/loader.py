"""
Configuration management and loading.

Handles gateway settings: storage location, cache store and per-action
TTLs, model defaults, plan limits, trial length and sweep interval.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_gateway.storage.models import PlanType, UsageAction


# Per-action cache freshness windows in seconds
DEFAULT_CACHE_TTLS: Dict[UsageAction, int] = {
    UsageAction.RECIPE_GENERATION: 3600,
    UsageAction.RECIPE_PARSE: 21600,
    UsageAction.PARSE_IMAGE: 21600,
    UsageAction.RECIPE_SUGGEST: 3600,
    UsageAction.SMART_GROUP: 604800,
}


@dataclass(frozen=True)
class PlanLimits:
    """Daily limits for one plan. 0 means unlimited."""
    max_recipe_generations_per_day: int = 0
    max_parse_requests_per_day: int = 0
    max_parse_image_requests_per_day: int = 0
    max_smart_group_requests_per_day: int = 0

    def __post_init__(self):
        """Validate limits are non-negative."""
        for name in PLAN_LIMIT_FIELDS:
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")


PLAN_LIMIT_FIELDS = (
    "max_recipe_generations_per_day",
    "max_parse_requests_per_day",
    "max_parse_image_requests_per_day",
    "max_smart_group_requests_per_day",
)


DEFAULT_PLAN_LIMITS: Dict[PlanType, PlanLimits] = {
    PlanType.FREE: PlanLimits(
        max_recipe_generations_per_day=2,
        max_parse_requests_per_day=5,
        max_parse_image_requests_per_day=1,
        max_smart_group_requests_per_day=3
    ),
    PlanType.PRO: PlanLimits(
        max_recipe_generations_per_day=5,
        max_parse_requests_per_day=30,
        max_parse_image_requests_per_day=10,
        max_smart_group_requests_per_day=20
    ),
    PlanType.PREMIUM: PlanLimits(),
}


@dataclass(frozen=True)
class StorageConfig:
    """Durable store location."""
    db_path: str = "ai_gateway.db"


@dataclass(frozen=True)
class CacheConfig:
    """Result cache store and per-action TTLs."""
    redis_url: str = "redis://localhost:6379/0"
    ttl_seconds: Dict[UsageAction, int] = field(
        default_factory=lambda: dict(DEFAULT_CACHE_TTLS)
    )

    def __post_init__(self):
        """Validate TTLs are positive."""
        for action, ttl in self.ttl_seconds.items():
            if ttl <= 0:
                raise ValueError(f"cache ttl for {action.value} must be > 0")


@dataclass(frozen=True)
class ModelConfig:
    """Model defaults."""
    name: str = "gpt-4.1-mini"
    timeout_seconds: float = 60.0

    def __post_init__(self):
        """Validate the timeout is positive."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class TrialConfig:
    """Trial subscription settings."""
    duration_days: int = 14

    def __post_init__(self):
        """Validate the trial length."""
        if self.duration_days <= 0:
            raise ValueError("duration_days must be > 0")


@dataclass(frozen=True)
class SchedulerConfig:
    """Trial sweep schedule."""
    sweep_interval_seconds: int = 3600

    def __post_init__(self):
        """Validate the sweep interval."""
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")


@dataclass(frozen=True)
class GatewayConfig:
    """Complete gateway configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    plans: Dict[PlanType, PlanLimits] = field(
        default_factory=lambda: dict(DEFAULT_PLAN_LIMITS)
    )
    trial: TrialConfig = field(default_factory=TrialConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def default(cls) -> "GatewayConfig":
        """Configuration with every default applied."""
        return cls()

    def cache_ttl_for(self, action: UsageAction) -> int:
        """Get the cache TTL for an action."""
        return self.cache.ttl_seconds.get(action, DEFAULT_CACHE_TTLS[action])

    def with_db_path(self, db_path: str) -> "GatewayConfig":
        """Return a copy pointing at another database file."""
        return replace(self, storage=StorageConfig(db_path=db_path))


def load_gateway_config(path: Optional[str] = None) -> GatewayConfig:
    """Load and validate gateway configuration from a YAML file.

    Every section is optional; missing values fall back to defaults.
    Unknown keys are rejected so typos never silently change limits.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated GatewayConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return GatewayConfig.default()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return GatewayConfig.default()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'storage', 'cache', 'model', 'plans', 'trial', 'scheduler'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    storage_data = _section(raw_config, 'storage', {'db_path'})
    storage = StorageConfig(**storage_data)

    cache_data = _section(raw_config, 'cache', {'redis_url', 'ttl_seconds'})
    cache = CacheConfig(
        redis_url=str(cache_data.get('redis_url', CacheConfig.redis_url)),
        ttl_seconds=_parse_ttls(cache_data.get('ttl_seconds', {}))
    )

    model_data = _section(raw_config, 'model', {'name', 'timeout_seconds'})
    timeout = model_data.get('timeout_seconds', ModelConfig.timeout_seconds)
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool):
        raise ValueError("'model.timeout_seconds' must be a number")
    model = ModelConfig(
        name=str(model_data.get('name', ModelConfig.name)),
        timeout_seconds=float(timeout)
    )

    plans = _parse_plans(raw_config.get('plans', {}))

    trial_data = _section(raw_config, 'trial', {'duration_days'})
    trial = TrialConfig(
        duration_days=_int_value(
            trial_data.get('duration_days', TrialConfig.duration_days),
            'trial.duration_days'
        )
    )

    scheduler_data = _section(raw_config, 'scheduler', {'sweep_interval_seconds'})
    scheduler = SchedulerConfig(
        sweep_interval_seconds=_int_value(
            scheduler_data.get(
                'sweep_interval_seconds', SchedulerConfig.sweep_interval_seconds
            ),
            'scheduler.sweep_interval_seconds'
        )
    )

    return GatewayConfig(
        storage=storage,
        cache=cache,
        model=model,
        plans=plans,
        trial=trial,
        scheduler=scheduler
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Fetch an optional top-level section and reject unknown keys."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _int_value(value: Any, path: str) -> int:
    """Validate an integer setting."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _parse_ttls(data: Any) -> Dict[UsageAction, int]:
    """Parse per-action TTL overrides on top of the defaults.

    Args:
        data: Mapping of action name to TTL seconds

    Returns:
        Complete action to TTL mapping

    Raises:
        ValueError: If an action is unknown or a TTL is not a positive integer
    """
    if not isinstance(data, dict):
        raise ValueError("'cache.ttl_seconds' must be a dictionary")

    ttls = dict(DEFAULT_CACHE_TTLS)
    for action_name, ttl in data.items():
        try:
            action = UsageAction(str(action_name).lower())
        except ValueError:
            valid_actions = [a.value for a in UsageAction]
            raise ValueError(
                f"Unknown action '{action_name}' in cache.ttl_seconds, "
                f"must be one of: {valid_actions}"
            )
        ttl = _int_value(ttl, f"cache.ttl_seconds.{action.value}")
        if ttl <= 0:
            raise ValueError(f"'cache.ttl_seconds.{action.value}' must be > 0")
        ttls[action] = ttl
    return ttls


def _parse_plans(data: Any) -> Dict[PlanType, PlanLimits]:
    """Parse plan limit overrides on top of the default catalog.

    Args:
        data: Mapping of plan type to partial limit settings

    Returns:
        Complete plan type to PlanLimits mapping

    Raises:
        ValueError: If a plan or limit name is unknown or a limit is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'plans' must be a dictionary")

    plans = dict(DEFAULT_PLAN_LIMITS)
    for plan_name, limits_data in data.items():
        try:
            plan_type = PlanType(str(plan_name).lower())
        except ValueError:
            valid_plans = [p.value for p in PlanType]
            raise ValueError(f"Unknown plan '{plan_name}', must be one of: {valid_plans}")

        if not isinstance(limits_data, dict):
            raise ValueError(f"Plan '{plan_name}' must be a dictionary")
        unknown_keys = set(limits_data.keys()) - set(PLAN_LIMIT_FIELDS)
        if unknown_keys:
            raise ValueError(f"Unknown keys in plans.{plan_name}: {unknown_keys}")

        overrides = {
            name: _int_value(value, f"plans.{plan_name}.{name}")
            for name, value in limits_data.items()
        }
        plans[plan_type] = replace(plans[plan_type], **overrides)
    return plans
