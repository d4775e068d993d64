"""
Unit tests for dump configuration (dumpkeeper/config.py).

Tests validation of disks, targets and retention limits into DumpSettings.
"""

import json
import dataclasses
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from dumpkeeper.config import (
    ConfigError,
    DiskMisconfigured,
    DumpSettings,
    RetentionPolicy,
    StorageTargetNotFound,
    load_dump_settings
)


class TestRetentionPolicy:
    """Test RetentionPolicy parsing."""

    def test_defaults(self):
        """Missing values fall back to defaults."""
        policy = RetentionPolicy.from_mapping({})

        assert policy == RetentionPolicy(day=1, week=7, month=12, year=0, total=0)

    def test_none_values_use_defaults(self):
        """None (unset environment variable) keeps the default."""
        policy = RetentionPolicy.from_mapping({'week': None, 'month': '6'})

        assert policy.week == 7
        assert policy.month == 6

    @pytest.mark.parametrize('raw', ['disabled', '', 'OFF', 0, '0'])
    def test_disabled_values(self, raw):
        """'disabled', empty strings and zero all mean 0."""
        policy = RetentionPolicy.from_mapping({'year': raw})

        assert policy.year == 0

    def test_negative_limit_rejected(self):
        with pytest.raises(ConfigError):
            RetentionPolicy.from_mapping({'day': -1})

    def test_non_integer_rejected(self):
        with pytest.raises(ConfigError):
            RetentionPolicy.from_mapping({'month': 'twelve'})

    def test_unknown_tier_rejected(self):
        with pytest.raises(ConfigError) as exc_info:
            RetentionPolicy.from_mapping({'century': 1})

        assert 'century' in str(exc_info.value)

    def test_policy_is_immutable(self):
        policy = RetentionPolicy()

        with pytest.raises(dataclasses.FrozenInstanceError):
            policy.day = 5


class TestLoadDumpSettings:
    """Test load_dump_settings validation."""

    def test_load_local_target(self, dump_config, disk_root):
        settings = load_dump_settings(dump_config)

        assert isinstance(settings, DumpSettings)
        target = settings.get_target('local')
        assert target.path == 'dumps'
        assert settings.get_disk(target).root == str(disk_root)
        assert settings.extension == '.sql'

    def test_compressed_extension(self, dump_config):
        dump_config['DUMP_COMPRESS'] = True

        settings = load_dump_settings(dump_config)

        assert settings.extension == '.sql.gz'

    def test_target_path_slashes_stripped(self, dump_config):
        dump_config['DUMP_STORAGES'] = {'local': {'disk': 'local', 'path': '/backups/db/'}}

        settings = load_dump_settings(dump_config)

        assert settings.get_target('local').path == 'backups/db'

    def test_mappings_are_read_only(self, settings):
        with pytest.raises(TypeError):
            settings.targets['other'] = settings.targets['local']

    def test_unknown_target(self, settings):
        with pytest.raises(StorageTargetNotFound) as exc_info:
            settings.get_target('missing')

        # Lists the existing targets
        assert 'local' in str(exc_info.value)

    def test_target_with_unknown_disk(self, dump_config):
        dump_config['DUMP_STORAGES']['broken'] = {'disk': 'nowhere', 'path': 'x'}
        settings = load_dump_settings(dump_config)

        with pytest.raises(DiskMisconfigured):
            settings.get_disk(settings.get_target('broken'))

    def test_s3_disk_without_bucket(self, dump_config):
        dump_config['DUMP_DISKS']['s3'] = {'driver': 's3'}
        dump_config['DUMP_STORAGES']['s3'] = {'disk': 's3', 'path': 'dumps'}
        settings = load_dump_settings(dump_config)

        with pytest.raises(DiskMisconfigured):
            settings.get_disk(settings.get_target('s3'))

    def test_unsupported_driver(self, dump_config):
        dump_config['DUMP_DISKS']['ftp'] = {'driver': 'ftp', 'root': '/srv'}
        dump_config['DUMP_STORAGES']['ftp'] = {'disk': 'ftp', 'path': 'dumps'}
        settings = load_dump_settings(dump_config)

        with pytest.raises(DiskMisconfigured):
            settings.get_disk(settings.get_target('ftp'))

    def test_disk_without_driver(self, dump_config):
        dump_config['DUMP_DISKS']['bad'] = {'root': '/tmp'}

        with pytest.raises(ConfigError):
            load_dump_settings(dump_config)

    def test_target_without_disk(self, dump_config):
        dump_config['DUMP_STORAGES']['bad'] = {'path': 'dumps'}

        with pytest.raises(ConfigError):
            load_dump_settings(dump_config)

    def test_invalid_retention_rejected(self, dump_config):
        dump_config['DUMP_RETENTION'] = {'week': -7}

        with pytest.raises(ConfigError):
            load_dump_settings(dump_config)

    def test_config_file_overrides(self, dump_config, tmp_path):
        """Sections of the JSON config file replace the inline ones."""
        config_file = tmp_path / 'dumps.json'
        config_file.write_text(json.dumps({
            'storages': {'nightly': {'disk': 'local', 'path': 'nightly'}},
            'retention': {'day': 2, 'year': 'disabled'}
        }))
        dump_config['DUMP_CONFIG_FILE'] = str(config_file)

        settings = load_dump_settings(dump_config)

        assert list(settings.targets) == ['nightly']
        assert settings.policy.day == 2
        assert settings.policy.year == 0
        # Disks section not in file, inline value kept
        assert 'local' in settings.disks

    def test_unreadable_config_file(self, dump_config, tmp_path):
        dump_config['DUMP_CONFIG_FILE'] = str(tmp_path / 'missing.json')

        with pytest.raises(ConfigError):
            load_dump_settings(dump_config)

    def test_invalid_max_workers(self, dump_config):
        dump_config['RETENTION_MAX_WORKERS'] = 0

        with pytest.raises(ConfigError):
            load_dump_settings(dump_config)

    def test_timezone_defaults_to_utc(self, dump_config):
        dump_config['DUMP_USE_UTC'] = False

        assert load_dump_settings(dump_config).tz == ZoneInfo('UTC')

    def test_local_timezone(self, dump_config):
        dump_config['DUMP_USE_UTC'] = False
        dump_config['DUMP_TIMEZONE'] = 'Europe/Berlin'

        tz = load_dump_settings(dump_config).tz

        assert datetime(2024, 1, 15, 12, tzinfo=tz).utcoffset() == timedelta(hours=1)
        assert datetime(2024, 7, 15, 12, tzinfo=tz).utcoffset() == timedelta(hours=2)

    def test_timezone_ignored_with_utc(self, dump_config):
        dump_config['DUMP_TIMEZONE'] = 'Europe/Berlin'

        assert load_dump_settings(dump_config).tz == timezone.utc

    def test_unknown_timezone(self, dump_config):
        dump_config['DUMP_TIMEZONE'] = 'Mars/Olympus_Mons'

        with pytest.raises(ConfigError, match='DUMP_TIMEZONE'):
            load_dump_settings(dump_config)

    def test_no_separator_setting(self, settings):
        assert 'separator' not in {f.name for f in dataclasses.fields(settings)}


class TestCreateApp:
    """Test the application factory."""

    def test_settings_attached(self, app):
        settings = app.extensions['dumpkeeper']

        assert isinstance(settings, DumpSettings)
        assert list(settings.targets) == ['local']

    def test_invalid_dump_config_fails_startup(self, dump_config):
        from dumpkeeper import create_app

        dump_config['DUMP_RETENTION'] = {'week': -1}

        with pytest.raises(ConfigError):
            create_app('testing', dump_config)

    def test_scheduler_not_started_when_disabled(self, app):
        from dumpkeeper import scheduler as scheduler_module

        assert app.config['SCHEDULER_ENABLED'] is False
        assert scheduler_module.scheduler is None
