"""
Settings Store
Runtime-tunable settings kept in the system_settings table, with config defaults
"""
import logging
from typing import Any, Dict, Optional

from models import db, SystemSetting

logger = logging.getLogger(__name__)

# Setting key -> (config key, description)
SETTING_DEFAULTS = {
    'merge_stream_limit': ('MERGE_STREAM_LIMIT', 'Items kept per key by the stream merge strategy'),
    'webhook_rate_limit_per_hour': ('WEBHOOK_RATE_LIMIT_PER_HOUR', 'Webhook requests allowed per owner per hour'),
    'webhook_max_request_size_kb': ('WEBHOOK_MAX_REQUEST_SIZE_KB', 'Maximum webhook body size in KB'),
    'default_refresh_interval': ('DEFAULT_REFRESH_INTERVAL', 'Refresh interval of new plugin instances in seconds'),
}


class SettingsStore:
    """Reads settings from the database, falling back to app config"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    def default_for(self, key: str):
        config_key, _ = SETTING_DEFAULTS[key]
        return self.config.get(config_key)

    def get(self, key: str):
        setting = SystemSetting.query.filter_by(key=key).first()
        if setting is None or setting.value is None:
            return self.default_for(key)
        return setting.get_typed_value()

    def get_int(self, key: str) -> int:
        """Integer setting; unparsable or non-positive values fall back to the default"""
        default = int(self.default_for(key))
        setting = SystemSetting.query.filter_by(key=key).first()
        if setting is None or not setting.value:
            return default

        try:
            value = int(setting.value)
        except ValueError:
            logger.warning(f"Setting {key} has non-integer value '{setting.value}', using {default}")
            return default

        if value <= 0:
            logger.warning(f"Setting {key} must be positive, using {default}")
            return default
        return value

    def set(self, key: str, value, description: Optional[str] = None) -> SystemSetting:
        if key not in SETTING_DEFAULTS:
            raise KeyError(f"Unknown setting: {key}")

        setting = SystemSetting.query.filter_by(key=key).first()
        if setting is None:
            setting = SystemSetting(key=key, description=description or SETTING_DEFAULTS[key][1])
            db.session.add(setting)

        setting.value = str(value)
        setting.value_type = 'int' if isinstance(value, int) and not isinstance(value, bool) else 'string'
        db.session.commit()

        logger.info(f"Setting {key} updated to {value}")
        return setting

    def all(self) -> Dict[str, Any]:
        return {key: self.get(key) for key in SETTING_DEFAULTS}
