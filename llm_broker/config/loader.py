"""
Configuration management and loading.

Resolves broker settings from defaults, an optional YAML file, and
environment variables (environment wins). Credentials are read from the
environment only and never appear in repr or logs.
"""

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from llm_broker.core.types import CallType


class ProviderKind(Enum):
    """Backend selected at construction time."""
    REMOTE = "remote"
    LOCAL = "local"
    OFFLINE = "offline"


class ReplayMode(Enum):
    """Replay log operating mode."""
    OFF = "off"
    RECORD = "record"
    REPLAY = "replay"


class DrainMode(Enum):
    """How the dispatcher's drain step is driven."""
    BACKGROUND = "background"  # workers drain on submit and completion
    TICK = "tick"  # caller drains once per simulation tick via pump()


@dataclass(frozen=True)
class PerCallType:
    """A numeric setting with one value per call type."""
    decision: float
    narrative: float
    conversation: float

    def __post_init__(self):
        for name in ("decision", "narrative", "conversation"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    def for_call(self, call_type: CallType) -> float:
        return getattr(self, call_type.value)


@dataclass(frozen=True)
class RemoteConfig:
    """Remote-hosted backend settings."""
    model: str = "gpt-3.5-turbo"
    base_url: Optional[str] = None
    api_key: Optional[str] = field(default=None, repr=False)

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class LocalConfig:
    """Local inference backend settings."""
    endpoint: Optional[str] = None
    model: str = "llama3"
    health_timeout: float = 1.0


@dataclass(frozen=True)
class RetryConfig:
    """Retry and backoff policy."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    fallback_enabled: bool = True

    def __post_init__(self):
        if self.max_retries < 0 or self.max_retries > 10:
            raise ValueError("max_retries must be between 0 and 10")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")


@dataclass(frozen=True)
class CircuitConfig:
    """Circuit breaker cooldown."""
    cooldown: float = 300.0

    def __post_init__(self):
        if self.cooldown <= 0:
            raise ValueError("cooldown must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Token-bucket limit on provider attempts; None disables it."""
    per_minute: Optional[float] = 60.0

    def __post_init__(self):
        if self.per_minute is not None and self.per_minute <= 0:
            raise ValueError("per_minute must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Response cache settings."""
    enabled: bool = True
    capacity: int = 1000
    ttl: PerCallType = field(default_factory=lambda: PerCallType(
        decision=120.0, narrative=1800.0, conversation=1200.0
    ))

    def __post_init__(self):
        if self.capacity <= 0:
            raise ValueError("capacity must be > 0")


@dataclass(frozen=True)
class ReplayConfig:
    """Replay log settings."""
    mode: ReplayMode = ReplayMode.OFF
    path: Optional[str] = None
    strict: bool = False  # raise on prompt divergence instead of warning

    def __post_init__(self):
        if self.mode != ReplayMode.OFF and not self.path:
            raise ValueError(f"replay mode '{self.mode.value}' requires a log path")


@dataclass(frozen=True)
class BudgetConfig:
    """Optional spending threshold for usage warnings."""
    limit_usd: Optional[float] = None
    warn_fraction: float = 0.8

    def __post_init__(self):
        if self.limit_usd is not None and self.limit_usd <= 0:
            raise ValueError("limit_usd must be > 0")
        if not 0 < self.warn_fraction <= 1:
            raise ValueError("warn_fraction must be in (0, 1]")


@dataclass(frozen=True)
class BrokerConfig:
    """Complete broker configuration."""
    provider: ProviderKind = ProviderKind.REMOTE
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    timeouts: PerCallType = field(default_factory=lambda: PerCallType(
        decision=3.0, narrative=10.0, conversation=5.0
    ))
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    temperatures: PerCallType = field(default_factory=lambda: PerCallType(
        decision=0.2, narrative=0.8, conversation=0.9
    ))
    replay: ReplayConfig = field(default_factory=ReplayConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    ledger_db_path: Optional[str] = None
    drain_mode: DrainMode = DrainMode.BACKGROUND

    def __post_init__(self):
        for call_type in CallType:
            if self.timeouts.for_call(call_type) <= 0:
                raise ValueError(f"timeout for {call_type.value} must be > 0")


ENV_PROVIDER = "LLM_BROKER_PROVIDER"
ENV_API_KEY = "LLM_BROKER_API_KEY"
ENV_OPENAI_KEY = "OPENAI_API_KEY"
ENV_MODEL = "LLM_BROKER_MODEL"
ENV_BASE_URL = "LLM_BROKER_BASE_URL"
ENV_LOCAL_ENDPOINT = "LLM_BROKER_LOCAL_ENDPOINT"
ENV_LOCAL_MODEL = "LLM_BROKER_LOCAL_MODEL"
ENV_MAX_RETRIES = "LLM_BROKER_MAX_RETRIES"
ENV_REPLAY_MODE = "LLM_BROKER_REPLAY_MODE"
ENV_REPLAY_PATH = "LLM_BROKER_REPLAY_PATH"
ENV_RATE_LIMIT = "LLM_BROKER_RATE_LIMIT"

DEFAULT_CONFIG_PATH = "llm_broker.yaml"

_TOP_LEVEL_KEYS = {
    'provider', 'remote', 'local', 'timeouts', 'retry', 'circuit',
    'cache', 'temperatures', 'replay', 'budget', 'ledger', 'dispatch', 'rate_limit'
}


def load_broker_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None
) -> BrokerConfig:
    """Resolve broker configuration.

    Defaults are overlaid by the YAML file (when given or when the default
    file exists), then by environment variables.

    Args:
        path: Path to YAML configuration file. A missing explicit path is an error.
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated BrokerConfig

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    env = os.environ if env is None else env

    config = BrokerConfig()
    if path is not None:
        config = _apply_file(config, path)
    elif Path(DEFAULT_CONFIG_PATH).exists():
        config = _apply_file(config, DEFAULT_CONFIG_PATH)

    return apply_environment(config, env)


def _apply_file(config: BrokerConfig, path: str) -> BrokerConfig:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Broker config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    return parse_config_dict(raw_config, base=config)


def parse_config_dict(raw_config: Dict[str, Any], base: Optional[BrokerConfig] = None) -> BrokerConfig:
    """Parse a configuration mapping with strict key validation."""
    config = base or BrokerConfig()

    unknown_keys = set(raw_config.keys()) - _TOP_LEVEL_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    changes: Dict[str, Any] = {}

    if 'provider' in raw_config:
        changes['provider'] = _parse_enum(ProviderKind, raw_config['provider'], "provider")

    if 'remote' in raw_config:
        data = _section(raw_config, 'remote', {'model', 'base_url'}, secret_keys={'api_key'})
        changes['remote'] = replace(config.remote, **data)

    if 'local' in raw_config:
        data = _section(raw_config, 'local', {'endpoint', 'model', 'health_timeout'})
        if 'health_timeout' in data:
            data['health_timeout'] = _positive_number(data['health_timeout'], "local.health_timeout")
        changes['local'] = replace(config.local, **data)

    if 'timeouts' in raw_config:
        changes['timeouts'] = _parse_per_call_type(raw_config['timeouts'], config.timeouts, "timeouts")

    if 'temperatures' in raw_config:
        changes['temperatures'] = _parse_per_call_type(
            raw_config['temperatures'], config.temperatures, "temperatures"
        )

    if 'retry' in raw_config:
        data = _section(raw_config, 'retry', {'max_retries', 'base_delay', 'max_delay', 'fallback_enabled'})
        if 'max_retries' in data:
            if not isinstance(data['max_retries'], int) or isinstance(data['max_retries'], bool):
                raise ValueError("'max_retries' in retry must be an integer")
        for key in ('base_delay', 'max_delay'):
            if key in data:
                data[key] = _positive_number(data[key], f"retry.{key}")
        if 'fallback_enabled' in data and not isinstance(data['fallback_enabled'], bool):
            raise ValueError("'fallback_enabled' in retry must be a boolean")
        changes['retry'] = replace(config.retry, **data)

    if 'circuit' in raw_config:
        data = _section(raw_config, 'circuit', {'cooldown'})
        if 'cooldown' in data:
            data['cooldown'] = _positive_number(data['cooldown'], "circuit.cooldown")
        changes['circuit'] = replace(config.circuit, **data)

    if 'rate_limit' in raw_config:
        data = _section(raw_config, 'rate_limit', {'per_minute'})
        if data.get('per_minute') is not None:
            data['per_minute'] = _positive_number(data['per_minute'], "rate_limit.per_minute")
        changes['rate_limit'] = replace(config.rate_limit, **data)

    if 'cache' in raw_config:
        data = _section(raw_config, 'cache', {'enabled', 'capacity', 'ttl'})
        if 'enabled' in data and not isinstance(data['enabled'], bool):
            raise ValueError("'enabled' in cache must be a boolean")
        if 'capacity' in data and (not isinstance(data['capacity'], int) or data['capacity'] <= 0):
            raise ValueError("'capacity' in cache must be a positive integer")
        if 'ttl' in data:
            data['ttl'] = _parse_per_call_type(data['ttl'], config.cache.ttl, "cache.ttl")
        changes['cache'] = replace(config.cache, **data)

    if 'replay' in raw_config:
        data = _section(raw_config, 'replay', {'mode', 'path', 'strict'})
        if 'mode' in data:
            data['mode'] = _parse_enum(ReplayMode, data['mode'], "replay.mode")
        if 'strict' in data and not isinstance(data['strict'], bool):
            raise ValueError("'strict' in replay must be a boolean")
        changes['replay'] = replace(config.replay, **data)

    if 'budget' in raw_config:
        data = _section(raw_config, 'budget', {'limit_usd', 'warn_fraction'})
        if data.get('limit_usd') is not None:
            data['limit_usd'] = _positive_number(data['limit_usd'], "budget.limit_usd")
        if 'warn_fraction' in data:
            data['warn_fraction'] = _positive_number(data['warn_fraction'], "budget.warn_fraction")
        changes['budget'] = replace(config.budget, **data)

    if 'ledger' in raw_config:
        data = _section(raw_config, 'ledger', {'db_path'})
        changes['ledger_db_path'] = data.get('db_path')

    if 'dispatch' in raw_config:
        data = _section(raw_config, 'dispatch', {'drain_mode'})
        if 'drain_mode' in data:
            changes['drain_mode'] = _parse_enum(DrainMode, data['drain_mode'], "dispatch.drain_mode")

    return replace(config, **changes)


def apply_environment(config: BrokerConfig, env: Mapping[str, str]) -> BrokerConfig:
    """Overlay environment variables onto a configuration."""
    changes: Dict[str, Any] = {}

    if env.get(ENV_PROVIDER):
        changes['provider'] = _parse_enum(ProviderKind, env[ENV_PROVIDER], ENV_PROVIDER)

    remote_changes: Dict[str, Any] = {}
    api_key = env.get(ENV_API_KEY) or env.get(ENV_OPENAI_KEY)
    if api_key:
        remote_changes['api_key'] = api_key
    if env.get(ENV_MODEL):
        remote_changes['model'] = env[ENV_MODEL]
    if env.get(ENV_BASE_URL):
        remote_changes['base_url'] = env[ENV_BASE_URL]
    if remote_changes:
        changes['remote'] = replace(config.remote, **remote_changes)

    local_changes: Dict[str, Any] = {}
    if env.get(ENV_LOCAL_ENDPOINT):
        local_changes['endpoint'] = env[ENV_LOCAL_ENDPOINT]
    if env.get(ENV_LOCAL_MODEL):
        local_changes['model'] = env[ENV_LOCAL_MODEL]
    if local_changes:
        changes['local'] = replace(config.local, **local_changes)

    if env.get(ENV_MAX_RETRIES):
        try:
            max_retries = int(env[ENV_MAX_RETRIES])
        except ValueError:
            raise ValueError(f"{ENV_MAX_RETRIES} must be an integer")
        changes['retry'] = replace(config.retry, max_retries=max_retries)

    if env.get(ENV_RATE_LIMIT):
        try:
            per_minute = float(env[ENV_RATE_LIMIT])
        except ValueError:
            raise ValueError(f"{ENV_RATE_LIMIT} must be a number")
        changes['rate_limit'] = replace(
            config.rate_limit, per_minute=_positive_number(per_minute, ENV_RATE_LIMIT)
        )

    replay_changes: Dict[str, Any] = {}
    if env.get(ENV_REPLAY_MODE):
        replay_changes['mode'] = _parse_enum(ReplayMode, env[ENV_REPLAY_MODE], ENV_REPLAY_MODE)
    if env.get(ENV_REPLAY_PATH):
        replay_changes['path'] = env[ENV_REPLAY_PATH]
    if replay_changes:
        changes['replay'] = replace(config.replay, **replay_changes)

    if not changes:
        return config
    return replace(config, **changes)


def _section(raw_config: Dict, name: str, allowed_keys: set, secret_keys: frozenset = frozenset()) -> Dict:
    """Fetch a config section, rejecting unknown and secret keys."""
    data = raw_config[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    secrets = set(data.keys()) & set(secret_keys)
    if secrets:
        raise ValueError(
            f"Credentials are not accepted in config files ({name}: {secrets}); "
            f"set {ENV_API_KEY} in the environment instead"
        )

    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return dict(data)


def _parse_per_call_type(data: Any, base: PerCallType, path: str) -> PerCallType:
    """Parse a {decision, narrative, conversation} mapping of numbers."""
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {c.value for c in CallType}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise ValueError(f"'{key}' in {path} must be a non-negative number")
        values[key] = float(value)
    return replace(base, **values)


def _parse_enum(enum_cls, value: Any, path: str):
    if value is False:
        # YAML 1.1 reads a bare `off` as False
        value = "off"
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{path}' must be one of: {valid}")


def _positive_number(value: Any, path: str) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return float(value)
