import os
import json
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


def _default_disks(local_root: str) -> Dict[str, Dict[str, Any]]:
    """Build disk definitions from the environment."""
    disks = {'local': {'driver': 'local', 'root': local_root}}

    if os.environ.get('S3_BUCKET'):
        disks['s3'] = {
            'driver': 's3',
            'bucket': os.environ['S3_BUCKET'],
            'root': os.environ.get('S3_PREFIX', ''),
            'region': os.environ.get('S3_REGION', 'us-east-1'),
            'access_key': os.environ.get('AWS_ACCESS_KEY_ID'),
            'secret_key': os.environ.get('AWS_SECRET_ACCESS_KEY'),
            'endpoint_url': os.environ.get('S3_ENDPOINT_URL'),
        }

    return disks


def _default_storages() -> Dict[str, Dict[str, str]]:
    storages = {'local': {'disk': 'local', 'path': 'dumps'}}
    if os.environ.get('S3_BUCKET'):
        storages['s3'] = {'disk': 's3', 'path': os.environ.get('S3_DUMP_PATH', 'dumps')}
    return storages


class Config:
    """Base configuration"""

    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dumpkeeper-dev-key'

    # Database (retention run history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/dumpkeeper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'
    LOG_TO_FILE = True

    # Dump storage
    LOCAL_DUMP_DIR = os.environ.get('LOCAL_DUMP_DIR') or '/data/dumps'
    DUMP_CONFIG_FILE = os.environ.get('DUMP_CONFIG_FILE')
    DUMP_DISKS = _default_disks(LOCAL_DUMP_DIR)
    DUMP_STORAGES = _default_storages()
    DUMP_COMPRESS = _env_flag('DUMP_COMPRESS', 'true')
    DUMP_DIR_NAME = os.environ.get('DUMP_DIR_NAME') or '%Y/%m'
    DUMP_FILENAME_FORMAT = os.environ.get('DUMP_FILENAME_FORMAT') or '%Y-%m-%d_%H-%M-%S'
    DUMP_USE_UTC = _env_flag('DUMP_USE_UTC', 'true')
    # IANA zone used when DUMP_USE_UTC is off
    DUMP_TIMEZONE = os.environ.get('DUMP_TIMEZONE') or 'UTC'

    # Retention limits (see RetentionPolicy)
    DUMP_RETENTION = {
        'day': os.environ.get('RETENTION_DAY'),
        'week': os.environ.get('RETENTION_WEEK'),
        'month': os.environ.get('RETENTION_MONTH'),
        'year': os.environ.get('RETENTION_YEAR'),
        'total': os.environ.get('RETENTION_TOTAL'),
    }
    RETENTION_MAX_WORKERS = int(os.environ.get('RETENTION_MAX_WORKERS', 4))

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'
    RETENTION_SCHEDULE_CRON = os.environ.get('RETENTION_SCHEDULE_CRON') or '0 2 * * *'
    # Seconds a missed run may be late and still execute
    RETENTION_MISFIRE_GRACE_TIME = int(os.environ.get('RETENTION_MISFIRE_GRACE_TIME', 3600))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "dumpkeeper.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    LOCAL_DUMP_DIR = os.path.join(DATA_DIR, 'dumps')
    DUMP_DISKS = _default_disks(LOCAL_DUMP_DIR)


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_TO_FILE = False
    SCHEDULER_ENABLED = False
    DUMP_COMPRESS = False
    DUMP_USE_UTC = True
    DUMP_CONFIG_FILE = None
    DUMP_RETENTION = {}


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


class ConfigError(ValueError):
    """Raised when dump configuration is invalid."""
    pass


class StorageTargetNotFound(ConfigError):
    """Raised when a storage target name is not configured."""
    pass


class DiskMisconfigured(ConfigError):
    """Raised when a target points at a missing or incomplete disk."""
    pass


SUPPORTED_DRIVERS = ('local', 's3')


@dataclass(frozen=True)
class DiskConfig:
    """A storage backend definition (local directory or S3 bucket)."""
    name: str
    driver: str
    root: str = ''
    bucket: Optional[str] = None
    region: str = 'us-east-1'
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    endpoint_url: Optional[str] = None


@dataclass(frozen=True)
class StorageTarget:
    """A named destination for dumps: a disk plus a path on it."""
    name: str
    disk: str
    path: str


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Grandfather-father-son retention limits.

    day:   max dumps kept per calendar day (0 = no daily thinning)
    week:  days in the recent window kept unconditionally (0 = no window)
    month: months in the one-per-month window (0 = no monthly tier)
    year:  number of yearly buckets kept beyond that (0 = unlimited)
    total: cap on the number of kept dumps (0 = unlimited)
    """
    day: int = 1
    week: int = 7
    month: int = 12
    year: int = 0
    total: int = 0

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> 'RetentionPolicy':
        """
        Build a policy from raw config values.

        Missing or None values fall back to defaults. 'disabled' and '' mean 0.

        Raises:
            ConfigError: On unknown tiers or values that are not non-negative integers
        """
        values = values or {}
        unknown = set(values) - {'day', 'week', 'month', 'year', 'total'}
        if unknown:
            raise ConfigError(f"Unknown retention tiers: {', '.join(sorted(unknown))}")

        limits = {}
        for tier, raw in values.items():
            if raw is None:
                continue
            limits[tier] = _parse_limit(tier, raw)
        return cls(**limits)

    def to_dict(self) -> Dict[str, int]:
        return {
            'day': self.day,
            'week': self.week,
            'month': self.month,
            'year': self.year,
            'total': self.total,
        }


def _parse_limit(tier: str, raw: Any) -> int:
    if isinstance(raw, str):
        raw = raw.strip().lower()
        if raw in ('', 'disabled', 'off'):
            return 0
    if isinstance(raw, bool):
        raise ConfigError(f"Retention limit '{tier}' must be an integer, got {raw!r}")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"Retention limit '{tier}' must be an integer, got {raw!r}")
    if value < 0:
        raise ConfigError(f"Retention limit '{tier}' must not be negative, got {value}")
    return value


@dataclass(frozen=True)
class DumpSettings:
    """Immutable dump configuration passed into the catalog, engine and service."""
    disks: Mapping[str, DiskConfig]
    targets: Mapping[str, StorageTarget]
    policy: RetentionPolicy = field(default_factory=RetentionPolicy)
    filename_format: str = '%Y-%m-%d_%H-%M-%S'
    dir_name: str = '%Y/%m'
    compress: bool = False
    use_utc: bool = True
    timezone_name: str = 'UTC'
    max_workers: int = 4

    @property
    def extension(self) -> str:
        return '.sql.gz' if self.compress else '.sql'

    @property
    def tz(self) -> tzinfo:
        """Time zone used for calendar bucketing."""
        if self.use_utc:
            return timezone.utc
        return ZoneInfo(self.timezone_name)

    def get_target(self, name: str) -> StorageTarget:
        """
        Look up a storage target by name.

        Raises:
            StorageTargetNotFound: If no such target is configured
        """
        target = self.targets.get(name)
        if target is None:
            existing = ', '.join(sorted(self.targets)) or 'none'
            raise StorageTargetNotFound(
                f"Storage target '{name}' does not exist. Existing targets: {existing}"
            )
        return target

    def get_disk(self, target: StorageTarget) -> DiskConfig:
        """
        Resolve and validate the disk of a target.

        Raises:
            DiskMisconfigured: If the disk is missing or lacks required settings
        """
        disk = self.disks.get(target.disk)
        if disk is None:
            raise DiskMisconfigured(
                f"Disk '{target.disk}' used by target '{target.name}' is not configured"
            )
        if disk.driver not in SUPPORTED_DRIVERS:
            raise DiskMisconfigured(f"Disk '{disk.name}' has unsupported driver '{disk.driver}'")
        if disk.driver == 'local' and not disk.root:
            raise DiskMisconfigured(f"Local disk '{disk.name}' requires a root directory")
        if disk.driver == 's3' and not disk.bucket:
            raise DiskMisconfigured(f"S3 disk '{disk.name}' requires a bucket")
        return disk


def load_dump_settings(app_config: Mapping[str, Any]) -> DumpSettings:
    """
    Validate raw application config into DumpSettings.

    Values from the optional JSON file named by DUMP_CONFIG_FILE override the
    'disks', 'storages' and 'retention' sections.

    Args:
        app_config: Flask config (or any mapping with the same keys)

    Returns:
        DumpSettings instance

    Raises:
        ConfigError: If any section is malformed
    """
    disks_raw = dict(app_config.get('DUMP_DISKS') or {})
    storages_raw = dict(app_config.get('DUMP_STORAGES') or {})
    retention_raw = dict(app_config.get('DUMP_RETENTION') or {})

    config_file = app_config.get('DUMP_CONFIG_FILE')
    if config_file:
        try:
            with open(config_file, 'r') as f:
                overrides = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to read dump config file {config_file}: {e}")
        if not isinstance(overrides, dict):
            raise ConfigError(f"Dump config file {config_file} must contain a JSON object")
        disks_raw = overrides.get('disks', disks_raw)
        storages_raw = overrides.get('storages', storages_raw)
        retention_raw = overrides.get('retention', retention_raw)

    disks = {}
    for name, options in disks_raw.items():
        if not isinstance(options, Mapping) or 'driver' not in options:
            raise ConfigError(f"Disk '{name}' must define a driver")
        allowed = {k: v for k, v in options.items() if k in DiskConfig.__dataclass_fields__}
        allowed['root'] = allowed.get('root') or ''
        allowed['region'] = allowed.get('region') or 'us-east-1'
        allowed.pop('name', None)
        disks[name] = DiskConfig(name=name, **allowed)

    targets = {}
    for name, options in storages_raw.items():
        if not isinstance(options, Mapping) or not options.get('disk'):
            raise ConfigError(f"Storage target '{name}' must define a disk")
        path = str(options.get('path') or '').strip('/')
        targets[name] = StorageTarget(name=name, disk=options['disk'], path=path)

    try:
        max_workers = int(app_config.get('RETENTION_MAX_WORKERS', 4))
    except (TypeError, ValueError):
        raise ConfigError("RETENTION_MAX_WORKERS must be an integer")
    if max_workers < 1:
        raise ConfigError("RETENTION_MAX_WORKERS must be at least 1")

    timezone_name = app_config.get('DUMP_TIMEZONE') or 'UTC'
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"Unknown time zone in DUMP_TIMEZONE: {timezone_name!r}")

    return DumpSettings(
        disks=MappingProxyType(disks),
        targets=MappingProxyType(targets),
        policy=RetentionPolicy.from_mapping(retention_raw),
        filename_format=app_config.get('DUMP_FILENAME_FORMAT') or '%Y-%m-%d_%H-%M-%S',
        dir_name=app_config.get('DUMP_DIR_NAME') or '%Y/%m',
        compress=bool(app_config.get('DUMP_COMPRESS', False)),
        use_utc=bool(app_config.get('DUMP_USE_UTC', True)),
        timezone_name=timezone_name,
        max_workers=max_workers,
    )
