"""
Configuration loader for the LLM bridge.

Loads settings from config.yaml (or a plain dict) on top of documented
defaults and validates them into typed settings objects.
"""

import os
import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULTS = {
    'providers': {
        'anthropic': {
            'api_key': None,
            'completion_url': 'https://api.anthropic.com/v1/complete',
            'timeout': 120.0,
            'max_retries': 1,
        },
        'openai': {
            'api_key': None,
            'embedding_url': 'https://api.openai.com/v1/embeddings',
            'timeout': 60.0,
            'max_retries': 1,
        },
    },
    'cache': {
        'completion_cache': True,
        'embedding_cache': True,
        'jsonl': {
            'enable': True,
            'path': './.llm-bridge-cache',
            'lock_timeout': 10.0,
        },
        'redis': {
            'enable': False,
            'url': 'redis://localhost:6379',
            'namespace': '',
        },
    },
    'dispatch': {
        'max_concurrency': 10,
        'post_call_delay': 0.0,
    },
    'logging': {
        'level': 'INFO',
    },
}

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class ConfigError(ValueError):
    """Raised when the configuration is missing or has invalid settings."""
    pass


def deep_merge(base: Dict, override: Dict) -> Dict:
    """Deep merge two dictionaries."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _check_keys(section: str, values: Dict[str, Any], allowed: Dict[str, Any]):
    unknown = sorted(set(values) - set(allowed))
    if unknown:
        raise ConfigError(f"Unknown setting(s) in '{section}': {', '.join(unknown)}")


def _non_negative(section: str, name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{section}.{name}' must be a number, got {value!r}")
    if number < 0:
        raise ConfigError(f"'{section}.{name}' must not be negative, got {value!r}")
    return number


@dataclass
class ProviderSettings:
    """Connection settings for one upstream provider."""
    api_key: Optional[str] = None
    url: str = ''
    timeout: float = 60.0
    max_retries: int = 1


@dataclass
class JsonlSettings:
    """Local JSONL file cache."""
    enable: bool = True
    path: Optional[str] = './.llm-bridge-cache'
    lock_timeout: float = 10.0


@dataclass
class RedisSettings:
    """Shared Redis cache."""
    enable: bool = False
    url: Optional[str] = 'redis://localhost:6379'
    namespace: str = ''


@dataclass
class CacheConfig:
    """Which cache kinds are enabled and which backends serve them."""
    completion_cache: bool = True
    embedding_cache: bool = True
    jsonl: JsonlSettings = field(default_factory=JsonlSettings)
    redis: RedisSettings = field(default_factory=RedisSettings)


@dataclass
class DispatchSettings:
    """Outbound provider call throttling."""
    max_concurrency: int = 10
    post_call_delay: float = 0.0


@dataclass
class LoggingSettings:
    level: str = 'INFO'


@dataclass
class BridgeConfig:
    """
    Fully validated bridge configuration.

    Build it with BridgeConfig.from_dict() or load_config(); both merge the
    given values over DEFAULTS and raise ConfigError on invalid settings.
    """
    anthropic: ProviderSettings
    openai: ProviderSettings
    cache: CacheConfig
    dispatch: DispatchSettings
    logging: LoggingSettings

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]] = None) -> 'BridgeConfig':
        """
        Merge values over DEFAULTS and validate the result.

        Args:
            values: Partial configuration, same shape as DEFAULTS

        Returns:
            BridgeConfig

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        values = values or {}
        if not isinstance(values, dict):
            raise ConfigError(f"Configuration must be a mapping, got {type(values).__name__}")

        _check_keys('config', values, DEFAULTS)
        merged = deep_merge(DEFAULTS, values)

        return cls(
            anthropic=_provider_settings('anthropic', merged['providers'], 'completion_url'),
            openai=_provider_settings('openai', merged['providers'], 'embedding_url'),
            cache=_cache_config(merged['cache']),
            dispatch=_dispatch_settings(merged['dispatch']),
            logging=_logging_settings(merged['logging']),
        )


def _provider_settings(name: str, providers: Dict[str, Any], url_key: str) -> ProviderSettings:
    _check_keys('providers', providers, DEFAULTS['providers'])
    values = providers[name]
    section = f"providers.{name}"
    _check_keys(section, values, DEFAULTS['providers'][name])

    if not values.get(url_key):
        raise ConfigError(f"'{section}.{url_key}' is required")

    max_retries = values.get('max_retries', 1)
    if not isinstance(max_retries, int) or max_retries < 0:
        raise ConfigError(f"'{section}.max_retries' must be a non-negative integer")

    return ProviderSettings(
        api_key=values.get('api_key'),
        url=values[url_key],
        timeout=_non_negative(section, 'timeout', values.get('timeout')),
        max_retries=max_retries,
    )


def _cache_config(values: Dict[str, Any]) -> CacheConfig:
    _check_keys('cache', values, DEFAULTS['cache'])
    jsonl = values['jsonl']
    redis = values['redis']
    _check_keys('cache.jsonl', jsonl, DEFAULTS['cache']['jsonl'])
    _check_keys('cache.redis', redis, DEFAULTS['cache']['redis'])

    if jsonl.get('enable') and not jsonl.get('path'):
        raise ConfigError("'cache.jsonl.path' is required when the JSONL cache is enabled")
    if redis.get('enable') and not redis.get('url'):
        raise ConfigError("'cache.redis.url' is required when the Redis cache is enabled")

    return CacheConfig(
        completion_cache=bool(values.get('completion_cache')),
        embedding_cache=bool(values.get('embedding_cache')),
        jsonl=JsonlSettings(
            enable=bool(jsonl.get('enable')),
            path=jsonl.get('path'),
            lock_timeout=_non_negative('cache.jsonl', 'lock_timeout', jsonl.get('lock_timeout')),
        ),
        redis=RedisSettings(
            enable=bool(redis.get('enable')),
            url=redis.get('url'),
            namespace=redis.get('namespace') or '',
        ),
    )


def _dispatch_settings(values: Dict[str, Any]) -> DispatchSettings:
    _check_keys('dispatch', values, DEFAULTS['dispatch'])
    max_concurrency = values.get('max_concurrency')
    if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int) or max_concurrency < 1:
        raise ConfigError(f"'dispatch.max_concurrency' must be an integer >= 1, got {max_concurrency!r}")

    return DispatchSettings(
        max_concurrency=max_concurrency,
        post_call_delay=_non_negative('dispatch', 'post_call_delay', values.get('post_call_delay')),
    )


def _logging_settings(values: Dict[str, Any]) -> LoggingSettings:
    _check_keys('logging', values, DEFAULTS['logging'])
    level = str(values.get('level', 'INFO')).upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"'logging.level' must be one of {', '.join(LOG_LEVELS)}, got {level!r}")
    return LoggingSettings(level=level)


def find_config_file() -> Optional[Path]:
    """Return the first config.yaml found in the usual locations."""
    config_paths = [
        Path('config.yaml'),
        Path('config.yml'),
        Path.home() / '.llm-bridge' / 'config.yaml',
    ]
    env_path = os.environ.get('LLM_BRIDGE_CONFIG')
    if env_path:
        config_paths.insert(0, Path(env_path))

    for path in config_paths:
        if path.exists():
            return path
    return None


def load_config(path: Optional[Union[str, Path]] = None) -> BridgeConfig:
    """
    Load configuration from a YAML file, or use defaults.

    Args:
        path: Explicit config file. When None, the usual locations are
              searched (see find_config_file).

    Returns:
        Validated BridgeConfig

    Raises:
        ConfigError: If the file cannot be parsed or holds invalid settings
    """
    import yaml

    config_file = Path(path) if path is not None else find_config_file()

    if config_file is None:
        logger.debug("No config.yaml found, using defaults")
        return BridgeConfig.from_dict({})

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            file_config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_file}: {e}") from e

    config = BridgeConfig.from_dict(file_config)
    logger.info(f"Loaded configuration from {config_file}")
    return config


def setup_logging(settings: LoggingSettings):
    """
    Apply the configured log level to the llm_bridge loggers.

    Handlers are left to the application (logging.basicConfig in its
    entry point).
    """
    logging.getLogger('llm_bridge').setLevel(getattr(logging, settings.level))
