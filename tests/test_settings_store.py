"""
Tests for runtime-tunable settings.
"""

import pytest

from models import db, SystemSetting
from utils.settings_store import SETTING_DEFAULTS


@pytest.fixture
def settings(app):
    return app.extensions['settings_store']


class TestSettingsStore:

    def test_defaults_come_from_config(self, app, settings):
        assert settings.get('merge_stream_limit') == app.config['MERGE_STREAM_LIMIT']
        assert settings.get_int('webhook_max_request_size_kb') == 5
        assert set(settings.all()) == set(SETTING_DEFAULTS)

    def test_set_overrides_default(self, settings):
        setting = settings.set('webhook_rate_limit_per_hour', 120)

        assert setting.value_type == 'int'
        assert settings.get('webhook_rate_limit_per_hour') == 120
        assert settings.get_int('webhook_rate_limit_per_hour') == 120
        assert setting.description == SETTING_DEFAULTS['webhook_rate_limit_per_hour'][1]

    def test_set_updates_existing_row(self, settings):
        settings.set('merge_stream_limit', 20)
        settings.set('merge_stream_limit', 30)

        assert SystemSetting.query.filter_by(key='merge_stream_limit').count() == 1
        assert settings.get_int('merge_stream_limit') == 30

    def test_unknown_key(self, settings):
        with pytest.raises(KeyError):
            settings.set('colour_scheme', 'dark')

    @pytest.mark.parametrize('raw', ['lots', '0', '-5'])
    def test_bad_values_fall_back_to_default(self, settings, raw):
        db.session.add(SystemSetting(key='merge_stream_limit', value=raw, value_type='string'))
        db.session.commit()

        assert settings.get_int('merge_stream_limit') == 10
