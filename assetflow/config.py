"""
Configuration management for AssetFlow
"""

import yaml
import os
import re
import copy
from pathlib import Path
from typing import Dict, Any, Optional, Union
import logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')


def _expand_env_vars(obj: Union[Dict, Any]) -> Union[Dict, Any]:
    """
    Recursively expand environment variables in config values.
    Supports ${VAR_NAME} and ${VAR_NAME:-default} syntax.
    """
    if isinstance(obj, dict):
        return {key: _expand_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_var(match):
            var_name, fallback = match.group(1), match.group(2)
            if fallback is not None:
                return os.getenv(var_name, fallback)
            return os.getenv(var_name, match.group(0))  # Return original if not found
        return _ENV_PATTERN.sub(replace_var, obj)
    else:
        return obj


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file

    Values in the file are layered over get_default_config(), so a partial
    file only needs to name the settings it changes.

    Args:
        config_path: Path to config file. If None, uses the packaged config.yaml

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    config_path = Path(config_path)

    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}. Using defaults.")
        return _expand_env_vars(get_default_config())

    try:
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return _expand_env_vars(get_default_config())

    logger.info(f"Loaded configuration from {config_path}")
    return _expand_env_vars(_deep_merge(get_default_config(), loaded))


def get_default_config() -> Dict[str, Any]:
    """
    Get default configuration values

    Returns:
        Default configuration dictionary
    """
    return {
        'database': {
            'url': '${DATABASE_URL:-sqlite:///assetflow.db}',
            'echo': False,
            'auto_init': True,
            'pool_size': 5,
            'max_overflow': 10,
        },
        'storage': {
            'type': 'local',
            'bucket': 'assets',
            'base_path': './storage',
            'region': 'us-east-1',
            'endpoint_url': None,
            'access_key': None,
            'secret_key': None,
        },
        'celery': {
            'broker_url': '${REDIS_URL:-redis://localhost:6379/0}',
            'result_backend': '${REDIS_URL:-redis://localhost:6379/0}',
        },
        'pipeline': {
            'defer_delay': 60,
            'max_deferrals': 5,
            'verification': {
                'min_bytes': 256,
            },
            # Per-stage overrides keyed by stage name, e.g.
            # generate_thumbnails: {max_attempts: 3, backoff: [60, 300, 900], timeout: 300}
            'stages': {},
        },
        'color_analysis': {
            'max_size': 200,
            'alpha_threshold': 0.95,
            'k': 6,
            'max_iterations': 50,
            'convergence_threshold': 0.001,
            'coverage_min': 0.05,
            'delta_e_merge': 10.0,
            'merge_iterations': 10,
            'bucket_coverage_min': 0.08,
            'bucket_max': 4,
        },
        'dominant_colors': {
            'coverage_min': 0.10,
            'max_colors': 3,
            'confidence': 0.95,
        },
        'thumbnails': {
            'format': 'JPEG',
            'quality': 85,
            'styles': {
                'thumb': 320,
                'medium': 1024,
                'large': 2048,
            },
        },
        'previews': {
            'max_size': 1600,
            'video_frames': 8,
            'video_frame_size': 480,
            'gif_frame_duration': 250,
        },
        'ai': {
            'enabled': False,
            'provider': 'gemini',
            'api_key': '${GEMINI_API_KEY:-}',
            'model': 'gemini-1.5-flash',
            'temperature': 0.2,
            'max_output_tokens': 1024,
        },
        'escalation': {
            'diagnostic_failure_threshold': 2,
            'ticket_failure_threshold': 3,
            'tickets_per_hour': 50,
        },
        'logging': {
            'level': 'INFO',
            'color': True,
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        },
    }


def save_config(config: Dict[str, Any], config_path: Path) -> bool:
    """
    Save configuration to YAML file

    Args:
        config: Configuration dictionary to save
        config_path: Path where to save the config

    Returns:
        True if successful, False otherwise
    """
    try:
        with open(config_path, 'w') as f:
            yaml.safe_dump(config, f, default_flow_style=False, indent=2)
        logger.info(f"Saved configuration to {config_path}")
        return True
    except OSError as e:
        logger.error(f"Failed to save config to {config_path}: {e}")
        return False


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get a nested configuration value using dot notation

    Args:
        config: Configuration dictionary
        key_path: Dot-separated key path (e.g., 'pipeline.verification.min_bytes')
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    keys = key_path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def update_config_value(config: Dict[str, Any], key_path: str, value: Any) -> None:
    """
    Update a nested configuration value using dot notation

    Args:
        config: Configuration dictionary to update
        key_path: Dot-separated key path (e.g., 'ai.enabled')
        value: New value to set
    """
    keys = key_path.split('.')
    current = config

    # Navigate to the parent of the target key
    for key in keys[:-1]:
        if key not in current:
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value
