"""Configuration management."""
import os
import yaml
from pathlib import Path

from utils.errors import ConfigurationError

_config = None
_CONFIG_DIR = Path(__file__).parent
_DEFAULT_CONFIG = _CONFIG_DIR / "default_config.yaml"
DEFAULT_RULES_PATH = _CONFIG_DIR / "alert_rules.yaml"
DEFAULT_PLANS_PATH = _CONFIG_DIR / "capacity_plans.yaml"


def load_config(path=None):
    """Load config from YAML, merging defaults with optional overrides."""
    global _config

    with open(_DEFAULT_CONFIG) as f:
        config = yaml.safe_load(f)

    if path and Path(path).exists():
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}
        config = _deep_merge(config, overrides)

    _apply_env_overrides(config)
    _validate_config(config)
    _config = config
    return config


# Environment variable -> (config path, type)
ENV_OVERRIDES = {
    "OPSMON_DB_PATH": (("database", "path"), str),
    "OPSMON_LOG_LEVEL": (("logging", "level"), str),
    "OPSMON_METRICS_URL": (("metrics", "base_url"), str),
    "OPSMON_EVAL_INTERVAL": (("monitoring", "default_evaluation_interval"), float),
}


def _apply_env_overrides(config):
    for env_key, (config_path, cast) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_key)
        if not raw:
            continue
        try:
            value = cast(raw)
        except ValueError:
            raise ConfigurationError(f"{env_key} must be a {cast.__name__} (got {raw!r})")
        section = config
        for key in config_path[:-1]:
            section = section.setdefault(key, {})
        section[config_path[-1]] = value
    if os.environ.get("OPSMON_METRICS_URL"):
        config.setdefault("metrics", {})["source"] = "http"


def get_config():
    """Return cached config, loading defaults if needed."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _deep_merge(base, override):
    """Recursively merge override into base dict."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _validate_config(config):
    """Basic config validation."""
    required_sections = ["monitoring", "alerts", "notifications", "metrics", "capacity", "database"]
    for section in required_sections:
        if section not in config:
            raise ConfigurationError(f"Missing required config section: {section}")

    for section, key in (
        ("monitoring", "collection_interval"),
        ("monitoring", "default_evaluation_interval"),
        ("capacity", "refresh_interval"),
        ("notifications", "send_timeout_seconds"),
    ):
        value = config[section].get(key)
        if not isinstance(value, (int, float)) or value <= 0:
            raise ConfigurationError(f"{section}.{key} must be a positive number (got {value!r})")

    threshold = config["capacity"].get("utilization_threshold", 80)
    if not 0 < threshold <= 100:
        raise ConfigurationError(f"capacity.utilization_threshold must be in (0, 100] (got {threshold})")

    if config["metrics"].get("source") == "http" and not config["metrics"].get("base_url"):
        raise ConfigurationError("metrics.base_url is required when metrics.source is http")
