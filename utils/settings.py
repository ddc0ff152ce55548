# Directory: utils
# Filename: settings.py

import json
import logging
import os
from typing import Any, Dict, List

_settings_logger = logging.getLogger(__name__)

ACCEPTANCE_SETTINGS: Dict[str, Any] = {}

_current_file_path = os.path.abspath(__file__)
_utils_dir = os.path.dirname(_current_file_path)
_json_path = os.path.join(_utils_dir, 'config', 'acceptance_settings.json')

try:
    _settings_logger.debug(f"Attempting to load acceptance settings from: {_json_path}")
    with open(_json_path, 'r') as f:
        ACCEPTANCE_SETTINGS = json.load(f)
    _settings_logger.debug("Successfully loaded ACCEPTANCE_SETTINGS from JSON.")
except FileNotFoundError:
    _settings_logger.critical(f"Configuration file not found at '{_json_path}'. Cannot continue.")
    raise
except json.JSONDecodeError:
    _settings_logger.critical(f"Could not parse '{_json_path}'. Check for syntax errors.")
    raise


def get_log_root() -> str:
    """Session root directory. BHC_LOG_DIR wins over the JSON value."""
    return os.environ.get('BHC_LOG_DIR') or ACCEPTANCE_SETTINGS['log_root']


def get_settle_delay_sec() -> float:
    try:
        return float(os.environ.get('BHC_SETTLE_DELAY_SEC', ACCEPTANCE_SETTINGS['settle_delay_sec']))
    except ValueError:
        _settings_logger.warning("Ignoring non-numeric BHC_SETTLE_DELAY_SEC.")
        return float(ACCEPTANCE_SETTINGS['settle_delay_sec'])


def get_watched_attributes() -> Dict[int, str]:
    """Watch list as {attribute id: attribute name}, in ascending id order."""
    raw = ACCEPTANCE_SETTINGS['watched_attributes']
    return {int(attr_id): name for attr_id, name in sorted(raw.items(), key=lambda item: int(item[0]))}


def get_expected_increase_attributes() -> List[int]:
    return [int(attr_id) for attr_id in ACCEPTANCE_SETTINGS['expected_increase_attributes']]
