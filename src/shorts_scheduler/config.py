import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from .models import AppConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
CONFIG_ENV_VAR = "SHORTS_SCHEDULER_CONFIG"


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(overrides: Optional[Dict[str, Any]] = None) -> AppConfig:
    """
    Resolve config: Default < Local < $SHORTS_SCHEDULER_CONFIG < overrides.
    LOG_LEVEL in the environment wins over every file for logging.level.

    Args:
        overrides: Nested dict in the same shape as the YAML files
            (e.g. {"scheduler": {"tick_interval_s": 5}})

    Returns:
        Validated AppConfig

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Merge file named by the environment
    extra_path = os.environ.get(CONFIG_ENV_VAR)
    if extra_path:
        config_data = merge_dicts(config_data, load_yaml(Path(extra_path)))

    # 4. Apply caller overrides
    if overrides:
        config_data = merge_dicts(config_data, overrides)

    log_level = os.environ.get("LOG_LEVEL")
    if log_level:
        config_data = merge_dicts(config_data, {"logging": {"level": log_level.upper()}})

    return AppConfig.from_dict(config_data)
