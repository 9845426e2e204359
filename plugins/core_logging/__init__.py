# plugins/core_logging/__init__.py
import os
import yaml
import logging
import logging.config
from pathlib import Path

from pixelforge.config import ENV_LOG_LEVEL

PLUGIN_DIR = Path(__file__).parent
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

_configured = False


def configure_logging(level: str = None, force: bool = False) -> None:
    """从 logging_config.yaml 配置日志。显式 level 优先，其次是 LOG_LEVEL 环境变量。"""
    global _configured
    if _configured and not force:
        return

    config_path = PLUGIN_DIR / "logging_config.yaml"
    with open(config_path, 'r', encoding='utf-8') as f:
        logging_config = yaml.safe_load(f)

    log_level_override = level or os.getenv(ENV_LOG_LEVEL)
    if log_level_override and log_level_override.upper() in LOG_LEVELS:
        logging_config['root']['level'] = log_level_override.upper()

    logging.config.dictConfig(logging_config)
    _configured = True

    logger = logging.getLogger(__name__)
    logger.debug(f"Logging configured at level {logging_config['root']['level']}.")
