import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import ConvQueueConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

LOG_FORMAT = "[%(levelname)s] %(asctime)s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


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


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> ConvQueueConfig:
    """
    Resolve config: Default < Local < CLI

    The default file is ``config/default.yaml`` unless ``config_path`` or the
    ``CONVQUEUE_CONFIG`` environment variable points elsewhere.

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    cli_args = cli_args or {}

    if config_path is None:
        config_path = Path(os.environ.get("CONVQUEUE_CONFIG", DEFAULT_CONFIG_PATH))

    config_data = load_yaml(config_path)
    if not config_data:
        logger.debug(f"No config found at {config_path}, using built-in defaults")

    local_data = load_yaml(LOCAL_CONFIG_PATH)
    config_data = merge_dicts(config_data, local_data)

    config = ConvQueueConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def configure_logging(level: Optional[str] = None) -> str:
    """Configure root logging. ``LOG_LEVEL`` in the environment wins.

    Returns the effective level name.
    """
    log_level = os.environ.get("LOG_LEVEL", level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
    return log_level
