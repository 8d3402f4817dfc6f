"""
Configuration for a backup run.

Everything is read from the environment exactly once, at process entry, and
handed to the components as plain dataclasses. No component reads
``os.environ`` itself.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Mapping, Optional

from sanity_backup.errors import ConfigError
from sanity_backup.utils.redaction import url_secrets


DEFAULT_API_VERSION = 'v2021-06-07'
DEFAULT_PREFIX = 'sanity'
DEFAULT_RETAIN_COUNT = 7
DEFAULT_ASSET_CONCURRENCY = 6

_TRUE_VALUES = ('true', '1', 'yes', 'on')
_FALSE_VALUES = ('false', '0', 'no', 'off')


@dataclass
class BackupConfig:
    """Business options of one backup run."""
    project_id: str = ''
    dataset: str = ''
    include_drafts: bool = True
    include_assets: bool = True
    asset_concurrency: int = DEFAULT_ASSET_CONCURRENCY
    retain_count: int = DEFAULT_RETAIN_COUNT
    retain_days: Optional[int] = None
    storage_prefix: str = DEFAULT_PREFIX
    api_version: str = DEFAULT_API_VERSION

    @property
    def retain_max_age(self) -> Optional[timedelta]:
        if self.retain_days is None:
            return None
        return timedelta(days=self.retain_days)


@dataclass
class StorageSettings:
    """Credentials and location of the R2 bucket."""
    account_id: str = ''
    access_key_id: str = ''
    secret_access_key: str = ''
    bucket: str = ''
    endpoint_url: str = ''
    region: str = 'auto'

    @property
    def endpoint(self) -> str:
        if self.endpoint_url:
            return self.endpoint_url
        return f"https://{self.account_id}.r2.cloudflarestorage.com"

    def missing(self) -> List[str]:
        """Names of the storage variables that are not set."""
        required = {
            'R2_ACCOUNT_ID': self.account_id or self.endpoint_url,
            'R2_ACCESS_KEY_ID': self.access_key_id,
            'R2_SECRET_ACCESS_KEY': self.secret_access_key,
            'R2_BUCKET': self.bucket,
        }
        return [name for name, value in required.items() if not value]


@dataclass
class Settings:
    """Everything the process needs, built once by from_env()."""
    source_token: str = ''
    backup: BackupConfig = field(default_factory=BackupConfig)
    storage: StorageSettings = field(default_factory=StorageSettings)
    webhook_url: Optional[str] = None
    log_level: str = 'info'
    log_dir: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Malformed values are collected rather than raised so that the
        executor can report them through validate() together with any
        missing variables, after the notifier is available.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Settings instance
        """
        env = os.environ if environ is None else environ
        errors: List[str] = []

        backup = BackupConfig(
            project_id=_first(env, 'SOURCE_PROJECT_ID', 'SANITY_PROJECT_ID'),
            dataset=_first(env, 'SOURCE_DATASET', 'SANITY_DATASET'),
            include_drafts=_parse_bool(env, 'INCLUDE_DRAFTS', True, errors),
            include_assets=_parse_bool(env, 'INCLUDE_ASSETS', True, errors),
            asset_concurrency=_parse_int(env, 'ASSET_CONCURRENCY', DEFAULT_ASSET_CONCURRENCY, errors),
            retain_count=_parse_int(env, 'RETAIN_COUNT', DEFAULT_RETAIN_COUNT, errors),
            retain_days=_parse_int(env, 'RETAIN_DAYS', None, errors),
            storage_prefix=env.get('R2_PREFIX', DEFAULT_PREFIX).strip().strip('/'),
            api_version=env.get('SANITY_API_VERSION') or DEFAULT_API_VERSION,
        )

        storage = StorageSettings(
            account_id=env.get('R2_ACCOUNT_ID', ''),
            access_key_id=env.get('R2_ACCESS_KEY_ID', ''),
            secret_access_key=env.get('R2_SECRET_ACCESS_KEY', ''),
            bucket=env.get('R2_BUCKET', ''),
            endpoint_url=env.get('R2_ENDPOINT_URL', ''),
        )

        return cls(
            source_token=_first(env, 'SOURCE_TOKEN', 'SANITY_TOKEN'),
            backup=backup,
            storage=storage,
            webhook_url=env.get('SLACK_WEBHOOK_URL') or None,
            log_level=env.get('LOG_LEVEL', 'info'),
            log_dir=env.get('LOG_DIR') or None,
            errors=errors,
        )

    def validate(self, require_source: bool = True, require_storage: bool = True):
        """
        Check that every required value is present and well-formed.

        Only variable names end up in the message, never values.

        Raises:
            ConfigError: If anything is missing or malformed
        """
        problems = list(self.errors)
        missing = []

        if require_source:
            if not self.source_token:
                missing.append('SOURCE_TOKEN')
            if not self.backup.project_id:
                missing.append('SOURCE_PROJECT_ID')
            if not self.backup.dataset:
                missing.append('SOURCE_DATASET')
        if require_storage:
            missing.extend(self.storage.missing())

        if missing:
            problems.append(f"missing required variables: {', '.join(missing)}")
        if self.backup.retain_count < 1:
            problems.append('RETAIN_COUNT must be at least 1')
        if self.backup.retain_days is not None and self.backup.retain_days < 1:
            problems.append('RETAIN_DAYS must be at least 1')
        if self.backup.asset_concurrency < 1:
            problems.append('ASSET_CONCURRENCY must be at least 1')

        if problems:
            raise ConfigError(f"Invalid configuration: {'; '.join(problems)}")

    def secrets(self) -> List[str]:
        """Secret values that must never appear in logs."""
        values = [
            self.source_token,
            self.storage.access_key_id,
            self.storage.secret_access_key,
        ]
        return [v for v in values if v] + url_secrets(self.webhook_url)

    def as_log_dict(self) -> Dict[str, object]:
        """Non-secret view of the configuration for the start-of-run log line."""
        return {
            'project': self.backup.project_id,
            'dataset': self.backup.dataset,
            'include_drafts': self.backup.include_drafts,
            'include_assets': self.backup.include_assets,
            'asset_concurrency': self.backup.asset_concurrency,
            'retain_count': self.backup.retain_count,
            'retain_days': self.backup.retain_days,
            'prefix': self.backup.storage_prefix or '(none)',
            'bucket': self.storage.bucket,
            'notifications': bool(self.webhook_url),
        }


def _first(env: Mapping[str, str], *names: str) -> str:
    for name in names:
        value = env.get(name)
        if value:
            return value.strip()
    return ''


def _parse_bool(env: Mapping[str, str], name: str, default: bool, errors: List[str]) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    errors.append(f"{name} must be a boolean")
    return default


def _parse_int(env: Mapping[str, str], name: str, default, errors: List[str]):
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw.strip())
    except ValueError:
        errors.append(f"{name} must be an integer")
        return default
