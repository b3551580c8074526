"""
Export configuration and credentials for the TMS csv export.

The export configuration is a JSON document like:
  {
    "apiURL": "https://collection.example.org/api",
    "outputDirectory": "../output_dir",
    "debug": {"limit": 10},
    "fields": [
      {"name": "id", "primaryKey": true},
      {"name": "title", "required": true},
      {"name": "classification", "enumerated": true}
    ],
    "warnings": {"singletonFields": true, "missingFields": true, "unusedFields": false}
  }

Credentials are loaded from a JSON file (`{"key": ..., "username": ..., "password": ...}`)
  or, failing that, from the TMS_API_KEY / TMS_USERNAME / TMS_PASSWORD env-vars.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

log = logging.getLogger(__name__)


DEFAULT_MAX_CONSECUTIVE_ITEM_FAILURES: int = 25
DEFAULT_REQUEST_PAUSE_SECONDS: float = 0.2


class ConfigurationError(ValueError):
    """
    Raised when the export configuration is missing or invalid.
    """


@dataclass(frozen=True)
class FieldConfig:
    name: str
    primary_key: bool = False
    required: bool = False
    enumerated: bool = False


@dataclass(frozen=True)
class WarningFlags:
    singleton_fields: bool = False
    missing_fields: bool = False
    unused_fields: bool = False


@dataclass(frozen=True)
class Credentials:
    """
    Credentials for the TMS API; not inspected by the exporter, just handed to the source.
    """

    key: str = ''
    username: str = ''
    password: str = ''

    @staticmethod
    def from_json(data: dict[str, object]) -> 'Credentials':
        if not isinstance(data, dict):
            raise ConfigurationError('credentials must be a JSON object')
        return Credentials(
            key=str(data.get('key') or ''),
            username=str(data.get('username') or ''),
            password=str(data.get('password') or ''),
        )

    @staticmethod
    def from_env() -> 'Credentials':
        return Credentials(
            key=os.getenv('TMS_API_KEY', ''),
            username=os.getenv('TMS_USERNAME', ''),
            password=os.getenv('TMS_PASSWORD', ''),
        )

    @staticmethod
    def load(path: Path | None = None) -> 'Credentials':
        """
        Loads credentials from `path` when given; otherwise from env-vars.
        Called by: export_tms_csv.main()
        """
        if path is None:
            log.debug('no credentials file given; using env-vars')
            return Credentials.from_env()
        try:
            with path.open('r', encoding='utf-8') as fh:
                data: dict[str, object] = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f'unable to read credentials file ``{path}``: {exc}') from exc
        return Credentials.from_json(data)


@dataclass(frozen=True)
class ExportConfig:
    """
    Holds the validated export configuration.
    - Requires an api-url, an output-directory, and a non-empty list of uniquely named fields.
    - Requires exactly one field flagged as the primary key.
    - Exposes the primary-key name, the ordered output headers, and the debug limit.
    - Carries the bound on consecutive per-object fetch failures (None means unbounded).
    """

    api_url: str
    output_directory: Path
    fields: tuple[FieldConfig, ...]
    warnings: WarningFlags = field(default_factory=WarningFlags)
    debug_limit: int | None = None
    max_consecutive_item_failures: int | None = DEFAULT_MAX_CONSECUTIVE_ITEM_FAILURES
    request_pause_seconds: float = DEFAULT_REQUEST_PAUSE_SECONDS

    @property
    def primary_key(self) -> str:
        return next(f.name for f in self.fields if f.primary_key)

    @property
    def output_headers(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def required_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.required]

    @property
    def enumerated_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.enumerated]

    @staticmethod
    def from_json(config_json: dict[str, object]) -> 'ExportConfig':
        """
        Builds and validates an ExportConfig from the raw (camelCase) JSON dict.
        Called by: TmsExporter.export_csv(), ExportConfig.from_path()
        """
        if isinstance(config_json, ExportConfig):
            return config_json
        if not isinstance(config_json, dict):
            raise ConfigurationError('export configuration must be a JSON object')

        api_url: object = config_json.get('apiURL')
        if not isinstance(api_url, str) or not api_url.strip():
            raise ConfigurationError('`apiURL` is required')
        output_directory: object = config_json.get('outputDirectory')
        if not isinstance(output_directory, str) or not output_directory.strip():
            raise ConfigurationError('`outputDirectory` is required')

        fields: tuple[FieldConfig, ...] = _parse_fields(config_json.get('fields'))
        warnings: WarningFlags = _parse_warnings(config_json.get('warnings'))
        debug_limit: int | None = _parse_debug_limit(config_json.get('debug'))

        max_failures: object = config_json.get('maxConsecutiveItemFailures', DEFAULT_MAX_CONSECUTIVE_ITEM_FAILURES)
        if max_failures is not None and (not _is_int(max_failures) or max_failures < 1):
            raise ConfigurationError('`maxConsecutiveItemFailures` must be a positive integer or null')

        pause: object = config_json.get('requestPauseSeconds', DEFAULT_REQUEST_PAUSE_SECONDS)
        if isinstance(pause, bool) or not isinstance(pause, (int, float)) or pause < 0:
            raise ConfigurationError('`requestPauseSeconds` must be a non-negative number')

        return ExportConfig(
            api_url=api_url.strip().rstrip('/'),
            output_directory=Path(output_directory).expanduser(),
            fields=fields,
            warnings=warnings,
            debug_limit=debug_limit,
            max_consecutive_item_failures=max_failures,  # type: ignore[arg-type]
            request_pause_seconds=float(pause),
        )

    @staticmethod
    def from_path(path: Path) -> 'ExportConfig':
        try:
            with path.open('r', encoding='utf-8') as fh:
                data: dict[str, object] = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f'unable to read export configuration ``{path}``: {exc}') from exc
        return ExportConfig.from_json(data)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _parse_fields(raw_fields: object) -> tuple[FieldConfig, ...]:
    """
    Parses the `fields` list, enforcing unique names and exactly one primary key.
    Called by: ExportConfig.from_json()
    """
    if not isinstance(raw_fields, list) or not raw_fields:
        raise ConfigurationError('`fields` must be a non-empty list')
    parsed: list[FieldConfig] = []
    seen: set[str] = set()
    for entry in raw_fields:
        if not isinstance(entry, dict):
            raise ConfigurationError(f'field entry must be an object, got ``{entry!r}``')
        name: object = entry.get('name')
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f'field entry has no name: ``{entry!r}``')
        if name in seen:
            raise ConfigurationError(f'duplicate field name ``{name}``')
        seen.add(name)
        parsed.append(
            FieldConfig(
                name=name,
                primary_key=bool(entry.get('primaryKey', False)),
                required=bool(entry.get('required', False)),
                enumerated=bool(entry.get('enumerated', False)),
            )
        )
    primary_keys: list[str] = [f.name for f in parsed if f.primary_key]
    if len(primary_keys) != 1:
        raise ConfigurationError(f'exactly one field must be the primary key; found {primary_keys}')
    return tuple(parsed)


def _parse_warnings(raw_warnings: object) -> WarningFlags:
    if raw_warnings is None:
        return WarningFlags()
    if not isinstance(raw_warnings, dict):
        raise ConfigurationError('`warnings` must be an object')
    return WarningFlags(
        singleton_fields=bool(raw_warnings.get('singletonFields', False)),
        missing_fields=bool(raw_warnings.get('missingFields', False)),
        unused_fields=bool(raw_warnings.get('unusedFields', False)),
    )


def _parse_debug_limit(raw_debug: object) -> int | None:
    if raw_debug is None:
        return None
    if not isinstance(raw_debug, dict):
        raise ConfigurationError('`debug` must be an object')
    limit: object = raw_debug.get('limit')
    if limit is None:
        return None
    if not _is_int(limit) or limit < 1:
        raise ConfigurationError('`debug.limit` must be a positive integer')
    return limit  # type: ignore[return-value]
