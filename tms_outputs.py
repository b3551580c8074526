"""
Files written into an export's run directory:
- `objects.csv` -- one row per exported object (CsvRecordSink)
- `warnings.csv` -- data-quality findings (WarningReporter)
- `meta.json` -- status and counts, rewritten on every change (ExportMetadata)
"""

import csv
import json
import logging
import os
from collections import Counter
from enum import Enum
from pathlib import Path
from typing import TextIO

from tms_export_config import ExportConfig, WarningFlags
from tms_source import TmsObject

log = logging.getLogger(__name__)


SINGLETON_THRESHOLD: int = 1  # fields or enumerated values seen this many times or fewer get a warning
WARNING_HEADERS: list[str] = ['object_id', 'warning', 'field', 'value']


class DirectoryCreationError(OSError):
    """
    Raised when an export's run directory can't be created.
    """


class ExportStatus(str, Enum):
    INCOMPLETE = 'INCOMPLETE'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'
    ERROR = 'ERROR'

    @property
    def is_terminal(self) -> bool:
        return self is not ExportStatus.INCOMPLETE


class ExportMetadata:
    """
    Persists an export's status and counts to `meta.json`.
    - Every setter rewrites the whole file (temp-file + os.replace), so the file is always complete.
    - Once a terminal status is set, later status writes are ignored.
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = path
        self.data: dict[str, object] = {
            'status': ExportStatus.INCOMPLETE.value,
            'totalObjects': 0,
            'processedObjects': 0,
        }
        self.save()

    @property
    def status(self) -> ExportStatus:
        return ExportStatus(self.data['status'])

    @status.setter
    def status(self, status: ExportStatus) -> None:
        current: ExportStatus = self.status
        if current.is_terminal:
            log.debug(f'status already ``{current.value}``; ignoring ``{ExportStatus(status).value}``')
            return
        self.data['status'] = ExportStatus(status).value
        self.save()

    @property
    def total_objects(self) -> int:
        return int(self.data['totalObjects'])  # type: ignore[arg-type]

    @total_objects.setter
    def total_objects(self, total: int) -> None:
        self.data['totalObjects'] = total
        self.save()

    @property
    def processed_objects(self) -> int:
        return int(self.data['processedObjects'])  # type: ignore[arg-type]

    @processed_objects.setter
    def processed_objects(self, processed: int) -> None:
        self.data['processedObjects'] = processed
        self.save()

    def save(self) -> None:
        tmp_path: Path = self.path.with_name(f'{self.path.name}.tmp')
        with tmp_path.open('w', encoding='utf-8') as fh:
            json.dump(self.data, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)


class CsvRecordSink:
    """
    Appends records to `objects.csv`.
    - Writes the header row on creation; columns follow the configured field order.
    - Fields a record lacks are written as empty cells.
    - `end()` flushes and closes; writing afterwards raises ValueError.
    """

    def __init__(self, path: Path, headers: list[str]) -> None:
        self.path: Path = path
        self.headers: list[str] = headers
        self.fh: TextIO | None = path.open('w', encoding='utf-8', newline='')
        self.writer: csv.DictWriter = csv.DictWriter(self.fh, fieldnames=headers, restval='', extrasaction='ignore')
        self.writer.writeheader()
        self.rows_written: int = 0

    def write(self, record: dict[str, object]) -> None:
        if self.fh is None:
            raise ValueError(f'``{self.path}`` already closed')
        self.writer.writerow(record)
        self.rows_written += 1

    def end(self) -> None:
        if self.fh is None:
            return
        self.fh.flush()
        self.fh.close()
        self.fh = None
        log.debug(f'closed ``{self.path}`` after {self.rows_written} rows')


class WarningReporter:
    """
    Writes data-quality findings to `warnings.csv`, per the configured warning flags.
    - missingFields: a row for each required field an object lacks (or has empty).
    - unusedFields: a row the first time an object exposes a field that isn't exported.
    - singletonFields: tallies, across the run, how many objects expose each field and how often each
      value of an enumerated field occurs. At `end()`, a `singleton_field` row for each field exposed by
      SINGLETON_THRESHOLD objects or fewer (once more objects than that were seen), and a `singleton_value`
      row for each enumerated value seen SINGLETON_THRESHOLD times or fewer (often a typo in a controlled vocabulary).
    """

    def __init__(self, output_dir: Path, export_config: ExportConfig) -> None:
        self.path: Path = output_dir / 'warnings.csv'
        self.flags: WarningFlags = export_config.warnings
        self.exported_fields: set[str] = set(export_config.output_headers)
        self.required_fields: list[str] = export_config.required_fields
        self.enumerated_fields: list[str] = export_config.enumerated_fields
        self.unused_seen: set[str] = set()
        self.value_counts: dict[str, Counter] = {name: Counter() for name in self.enumerated_fields}
        self.first_seen_ids: dict[tuple[str, str], object] = {}
        self.field_counts: Counter = Counter()
        self.field_first_ids: dict[str, object] = {}
        self.objects_seen: int = 0
        self.fh: TextIO | None = self.path.open('w', encoding='utf-8', newline='')
        self.writer = csv.writer(self.fh)
        self.writer.writerow(WARNING_HEADERS)
        self.warning_count: int = 0

    def append_fields_for_object(self, object_id: object, tms_object: TmsObject, record: dict[str, object]) -> None:
        """
        Checks one object against the configured warnings.
        Called by: TmsExporter.process_object()
        """
        if self.flags.missing_fields:
            for name in self.required_fields:
                if record.get(name) in (None, ''):
                    self._write_warning(object_id, 'missing_field', name, '')
        if self.flags.unused_fields:
            for name in tms_object.field_names():
                if name not in self.exported_fields and name not in self.unused_seen:
                    self.unused_seen.add(name)
                    self._write_warning(object_id, 'unused_field', name, '')
        if self.flags.singleton_fields:
            self.objects_seen += 1
            for name in tms_object.field_names():
                self.field_counts[name] += 1
                self.field_first_ids.setdefault(name, object_id)
            for name in self.enumerated_fields:
                value: object = record.get(name)
                if value in (None, ''):
                    continue
                value_key: str = str(value)
                self.value_counts[name][value_key] += 1
                self.first_seen_ids.setdefault((name, value_key), object_id)

    def end(self) -> None:
        """
        Writes the deferred singleton findings, then flushes and closes.
        Called by: TmsExporter.finish_export()
        """
        if self.fh is None:
            return
        if self.flags.singleton_fields:
            if self.objects_seen > SINGLETON_THRESHOLD:
                for name, count in sorted(self.field_counts.items()):
                    if count <= SINGLETON_THRESHOLD:
                        self._write_warning(self.field_first_ids[name], 'singleton_field', name, '')
            for name in self.enumerated_fields:
                for value_key, count in sorted(self.value_counts[name].items()):
                    if count <= SINGLETON_THRESHOLD:
                        self._write_warning(self.first_seen_ids[(name, value_key)], 'singleton_value', name, value_key)
        self.fh.flush()
        self.fh.close()
        self.fh = None
        log.debug(f'closed ``{self.path}`` after {self.warning_count} warnings')

    def _write_warning(self, object_id: object, warning: str, field_name: str, value: str) -> None:
        if self.fh is None:
            raise ValueError(f'``{self.path}`` already closed')
        self.writer.writerow([object_id, warning, field_name, value])
        self.warning_count += 1
