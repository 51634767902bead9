"""
Engine configuration: defaults merged with an optional YAML file.
"""
import os
import yaml

from .errors import ValidationError

CONFIG_ENV_VAR = 'DRAW_ENGINE_CONFIG'

# Keys whose values are dicts merged key by key with the defaults
_NESTED_KEYS = ('scoring', 'club_scoring', 'xp')


def get_default_config():
    """Return default configuration."""
    return {
        'scoring': {'win': 50, 'loss': 10, 'withdraw': 5},
        'club_scoring': {'win': 3, 'loss': 0, 'withdraw': 0},
        'xp': {'win': 50, 'loss': -15},
        'manual_seed_base': 10000,
        'default_qualifiers_count': 2,
        'max_batch_size': 500,
        'collapse_bye_rounds': True,
        'require_ready_players': True,
        'log_level': 'INFO',
    }


def merge_config(data):
    """Merge a partial config dict with the defaults."""
    config = get_default_config()
    if not data:
        return config
    for key, value in data.items():
        if key in _NESTED_KEYS and isinstance(value, dict):
            config[key] = {**config[key], **value}
        else:
            config[key] = value
    return config


def load_config(path=None):
    """Load configuration from YAML, merging with defaults.

    The path defaults to the DRAW_ENGINE_CONFIG environment variable. A
    missing or empty file yields the defaults.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path or not os.path.exists(path):
        return get_default_config()
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if data is None:
        return get_default_config()
    if not isinstance(data, dict):
        raise ValidationError(f"Config file {path} must contain a mapping")
    return merge_config(data)
