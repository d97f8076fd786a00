import json
import os

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
CONFIG_FILE_PATH = os.getenv('DERBY_CONFIG_PATH', os.path.join(PROJECT_ROOT, 'configs', 'race_config.json'))

def load_config(path=CONFIG_FILE_PATH):
    """
    Loads the race balance config file.
    """
    try:
        with open(path, 'r') as f:
            config = json.load(f)
        return config
    except FileNotFoundError:
        print(f"FATAL ERROR: Could not find config file at {path}")
        return None
    except Exception as e:
        print(f"FATAL ERROR: Could not parse config file {path}: {e}")
        return None

# Load the config ONCE when the module is first imported
RACE_CONFIG = load_config()

def get_config(key_path, default=None):
    """
    Safely gets a value from the loaded config using a 'dot.path'.
    Example: get_config('phases.countdown_seconds')
    """
    if not RACE_CONFIG:
        return default

    try:
        keys = key_path.split('.')
        value = RACE_CONFIG
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        print(f"Warning: Could not find config key: {key_path}")
        return default

def resolve_path(relative_path):
    """Resolves a config-relative path against the project root."""
    if os.path.isabs(relative_path):
        return relative_path
    return os.path.join(PROJECT_ROOT, relative_path)
