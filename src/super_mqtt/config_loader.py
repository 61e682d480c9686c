"""
Configuration Loader.

Reads the YAML file holding the broker address and credentials and turns
its `mqtt:` section into a `ConnectionConfig`.

Example:

    mqtt:
      host: broker.local
      port: 1883
      username: sensor-17
      password: s3cret
      protocol: "3.1.1"
"""
import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from super_mqtt.models import ConnectionConfig

logger = logging.getLogger(__name__)

def load_config(config_path: Union[str, Path] = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file into a plain dict.
    A missing file is not an error: callers get an empty dict and the defaults apply.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse config file {path}: {e}")
        raise

    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(config).__name__}")

    logger.info(f"Loaded configuration from {path}")
    return config


def load_connection_config(config_path: Union[str, Path] = "config.yaml") -> ConnectionConfig:
    """Shortcut for `ConnectionConfig.from_dict(load_config(path))`."""
    connection_config = ConnectionConfig.from_dict(load_config(config_path))
    logger.debug(f"Broker endpoint from config: {connection_config.host}:{connection_config.port}")
    return connection_config
