# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Exports a TMS collection to a csv file.
Pages through the TMS api one object at a time (serially, with a slight sleep), writing each
  object as a row to `objects.csv`, data-quality findings to `warnings.csv`, and the run's
  status and counts to `meta.json` -- all in a fresh `csv_<epoch-millis>` directory per run.

Usage:
  uv run ./export_tms_csv.py --config-path ./export_config.json --credentials-path ./credentials.json --test-limit 4

Args:
  --config-path (required) -- export configuration json (see tms_export_config.py)
  --credentials-path (optional) -- defaults to the TMS_API_KEY / TMS_USERNAME / TMS_PASSWORD env-vars
  --output-dir (optional) -- overrides the config's `outputDirectory`
  --test-limit (optional) -- overrides the config's `debug.limit`; convenient for testing

Ctrl-C cancels the export cooperatively; the object being fetched is finished first.
"""

import argparse
import asyncio
import dataclasses
import logging
import os
import signal
import time
from collections.abc import Callable
from contextlib import AsyncExitStack
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

import httpx
import humanize
from tqdm import tqdm

from tms_export_config import ConfigurationError, Credentials, ExportConfig
from tms_outputs import CsvRecordSink, DirectoryCreationError, ExportMetadata, ExportStatus, WarningReporter
from tms_records import RecordBuilder
from tms_source import CollectionFetchError, ObjectFetchError, TmsObject, TmsPagedSource

## setup logging
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
log = logging.getLogger(__name__)
## prevent httpx from logging
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)  # or logging.ERROR if you prefer only errors
        lg.propagate = False  # don't bubble up to root


USER_AGENT: str = 'tms-csv-exporter/1.0'
PROGRESS_LOG_EVERY: int = 100


class PagedSource(Protocol):
    async def count(self) -> int: ...

    async def has_more(self) -> bool: ...

    async def next(self) -> TmsObject | None: ...


class ProgressChannel(Protocol):
    """
    Receives fire-and-forget notifications about a running export.
    Each call gets the exporter's current status snapshot (see TmsExporter.status).
    """

    def started(self, status: dict[str, object]) -> None: ...

    def progress(self, status: dict[str, object]) -> None: ...

    def completed(self, status: dict[str, object]) -> None: ...


class NullProgress:
    def started(self, status: dict[str, object]) -> None:
        pass

    def progress(self, status: dict[str, object]) -> None:
        pass

    def completed(self, status: dict[str, object]) -> None:
        pass


class TqdmProgress:
    """
    Shows a tqdm progress-bar for a running export.
    - The bar's total is filled in once counting is done.
    """

    def __init__(self, **tqdm_kwargs: object) -> None:
        self.tqdm_kwargs: dict[str, object] = tqdm_kwargs
        self.bar: tqdm | None = None

    def started(self, status: dict[str, object]) -> None:
        self.bar = tqdm(total=status['total'] or None, desc='Exporting objects', unit='object', **self.tqdm_kwargs)

    def progress(self, status: dict[str, object]) -> None:
        if self.bar is None:
            return
        total: int = status['total']  # type: ignore[assignment]
        if total and self.bar.total != total:
            self.bar.total = total
        self.bar.update(status['processed'] - self.bar.n)  # type: ignore[operator]

    def completed(self, status: dict[str, object]) -> None:
        if self.bar is None:
            return
        self.bar.close()
        self.bar = None


class TmsExporter:
    """
    Manages the export from TMS to a csv file.
    - Creates a fresh run directory, then builds the source, csv-sink, warning-reporter, and meta-store.
    - Counts the collection (or takes `debug.limit` as the total), then loops object-by-object.
    - Skips objects that fail to fetch; gives up with ERROR after too many consecutive failures.
    - Finishes exactly once, with COMPLETED, CANCELLED, or ERROR.
    - Reports failures during the run through the returned status, not by raising.

    A `source_factory` can be passed to supply a PagedSource other than the TMS api;
      otherwise a TmsPagedSource is built on `client` (or on a client made per run).
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        progress: ProgressChannel | None = None,
        client: httpx.AsyncClient | None = None,
        source_factory: Callable[[ExportConfig], PagedSource] | None = None,
    ) -> None:
        self.credentials: Credentials = credentials
        self.progress: ProgressChannel = progress if progress is not None else NullProgress()
        self.client: httpx.AsyncClient | None = client
        self.source_factory: Callable[[ExportConfig], PagedSource] | None = source_factory
        self.active: bool = False
        self.running: bool = False
        self.processed_object_count: int = 0
        self.total_object_count: int = 0
        self.limit_output: bool = False
        self.csv_file_path: Path | None = None
        self.source: PagedSource | None = None
        self.record_builder: RecordBuilder | None = None
        self.csv: CsvRecordSink | None = None
        self.warning_reporter: WarningReporter | None = None
        self.export_meta: ExportMetadata | None = None

    @property
    def status(self) -> dict[str, object]:
        return {
            'active': self.active,
            'csv': str(self.csv_file_path) if self.csv_file_path is not None else None,
            'processed': self.processed_object_count,
            'total': self.total_object_count,
            'status': self.export_meta.status if self.export_meta is not None else None,
        }

    async def export_csv(self, config_json: dict[str, object] | ExportConfig) -> dict[str, object]:
        """
        Runs an export and returns the final status snapshot.
        Raises ConfigurationError, or DirectoryCreationError when the run directory or its files can't be created;
          any failure after that is reported as an ERROR status in the returned snapshot.
        """
        log.info('Beginning CSV export')
        if self.running:
            raise RuntimeError('an export is already running on this exporter')
        export_config: ExportConfig = ExportConfig.from_json(config_json)
        log.info(f'Reading TMS API from root URL ``{export_config.api_url}``')
        output_path: Path = self.create_output_dir(export_config)

        self.running = True
        try:
            async with AsyncExitStack() as stack:
                source: PagedSource = await self.build_source(export_config, stack)
                self.begin_export(export_config, output_path, source, stack)
                await self.process_tms(export_config)
        finally:
            self.running = False
        return self.status

    def cancel_export(self) -> None:
        """
        Asks the running export to stop; takes effect at the next object boundary.
        """
        log.info('Cancelling CSV export')
        self.active = False
        if self.export_meta is not None:
            self.export_meta.status = ExportStatus.CANCELLED

    def create_output_dir(self, export_config: ExportConfig) -> Path:
        output_path: Path = export_config.output_directory / f'csv_{_now_epoch_millis()}'
        log.info(f'Creating CSV output directory ``{output_path}``')
        try:
            export_config.output_directory.mkdir(parents=True, exist_ok=True)
            output_path.mkdir()
        except OSError as exc:
            raise DirectoryCreationError(f'unable to create output directory ``{output_path}``: {exc}') from exc
        return output_path

    async def build_source(self, export_config: ExportConfig, stack: AsyncExitStack) -> PagedSource:
        if self.source_factory is not None:
            return self.source_factory(export_config)
        client: httpx.AsyncClient | None = self.client
        if client is None:
            client = await stack.enter_async_context(build_client())
        return TmsPagedSource(
            client,
            self.credentials,
            export_config.api_url,
            request_pause_seconds=export_config.request_pause_seconds,
        )

    def begin_export(
        self, export_config: ExportConfig, output_path: Path, source: PagedSource, stack: AsyncExitStack
    ) -> None:
        """
        Resets run state and builds the output writers.
        The writers are also closed by `stack`, so a failure building a later one doesn't leak an open file.
        Called by: export_csv()
        """
        self.active = True
        self.processed_object_count = 0
        self.total_object_count = 0
        self.limit_output = False
        self.source = source
        self.record_builder = RecordBuilder(export_config)
        self.csv_file_path = output_path / 'objects.csv'
        self.csv = None
        self.warning_reporter = None
        self.export_meta = None
        stack.callback(self.deactivate)
        try:
            self.csv = CsvRecordSink(self.csv_file_path, export_config.output_headers)
            stack.callback(self.csv.end)
            self.warning_reporter = WarningReporter(output_path, export_config)
            stack.callback(self.warning_reporter.end)
            self.export_meta = ExportMetadata(output_path / 'meta.json')
        except OSError as exc:
            raise DirectoryCreationError(f'unable to create output files in ``{output_path}``: {exc}') from exc
        self.export_meta.status = ExportStatus.INCOMPLETE
        self.export_meta.processed_objects = 0
        self.notify('started')

    async def process_tms(self, export_config: ExportConfig) -> None:
        """
        Counts, iterates, and always finishes the export exactly once.
        Called by: export_csv()
        """
        status: ExportStatus = ExportStatus.ERROR
        try:
            if await self.count_objects(export_config):
                status = await self.process_collection(export_config)
        except asyncio.CancelledError:
            status = ExportStatus.CANCELLED
            raise
        except Exception:
            log.exception('Unexpected error during export, finishing')
            status = ExportStatus.ERROR
        finally:
            self.finish_export(status)

    async def count_objects(self, export_config: ExportConfig) -> bool:
        """
        Sets the total object count; returns False if the collection couldn't be counted.
        Called by: process_tms()
        """
        assert self.source is not None and self.export_meta is not None
        if export_config.debug_limit:
            self.limit_output = True
            self.total_object_count = export_config.debug_limit
            log.info(f'Limiting output to {export_config.debug_limit} entries')
        else:
            try:
                self.total_object_count = await self.source.count()
            except CollectionFetchError as exc:
                log.error(f'Error counting collection objects: {exc}')
                self.export_meta.status = ExportStatus.ERROR
                return False
        self.export_meta.total_objects = self.total_object_count
        log.info(f'Processing {self.total_object_count} collection objects')
        return True

    async def process_collection(self, export_config: ExportConfig) -> ExportStatus:
        """
        Loops object-by-object until the collection ends, the limit is hit, the export is cancelled, or it fails.
        Returns the status to finish with.
        Called by: process_tms()
        """
        assert self.source is not None
        max_failures: int | None = export_config.max_consecutive_item_failures
        consecutive_failures: int = 0
        while True:
            if not self.active:
                log.info('Export cancelled, finishing')
                return ExportStatus.CANCELLED

            try:
                has_next: bool = await self.source.has_more()
            except CollectionFetchError as exc:
                log.error(f'{exc}')
                log.info('Error fetching collection data, finishing')
                return ExportStatus.ERROR
            if not has_next:
                log.info('Reached the end of the collection, finishing')
                return ExportStatus.COMPLETED

            try:
                tms_object: TmsObject | None = await self.source.next()
            except ObjectFetchError as exc:
                consecutive_failures += 1
                log.warning(f'{exc}')
                if max_failures is not None and consecutive_failures > max_failures:
                    log.error(f'{consecutive_failures} consecutive object fetches failed, finishing')
                    return ExportStatus.ERROR
                log.info('Error fetching collection object, skipping')
                continue
            consecutive_failures = 0

            if tms_object is None:
                log.info('Reached the end of the collection, finishing')
                return ExportStatus.COMPLETED
            if not self.active:
                log.info('Export cancelled while fetching; discarding fetched object, finishing')
                return ExportStatus.CANCELLED

            self.process_object(tms_object)
            if self.limit_output and self.processed_object_count >= export_config.debug_limit:  # type: ignore[operator]
                log.info(f'Reached {self.processed_object_count} collection objects processed, finishing')
                return ExportStatus.COMPLETED

    def process_object(self, tms_object: TmsObject) -> None:
        """
        Builds, writes, and checks one object's record, then updates the counts.
        Called by: process_collection()
        """
        assert self.record_builder and self.csv and self.warning_reporter and self.export_meta
        object_id, record = self.record_builder.build(tms_object)
        self.csv.write(record)
        self.warning_reporter.append_fields_for_object(object_id, tms_object, record)
        self.processed_object_count += 1
        self.export_meta.processed_objects = self.processed_object_count
        self.notify('progress')
        if self.processed_object_count % PROGRESS_LOG_EVERY == 0:
            log.info(f'Processed {self.processed_object_count} of {self.total_object_count} collection objects')

    def finish_export(self, status: ExportStatus) -> None:
        """
        Closes the output files, notifies observers, and sets the terminal status.
        Called by: process_tms()
        """
        self.active = False
        if self.csv is not None:
            self.csv.end()
        if self.warning_reporter is not None:
            self.warning_reporter.end()
        self.notify('completed')
        log.info(f'CSV export completed with status ``{status.value}``')
        if self.export_meta is not None:
            self.export_meta.status = status

    def deactivate(self) -> None:
        self.active = False

    def notify(self, signal_name: str) -> None:
        try:
            getattr(self.progress, signal_name)(self.status)
        except Exception:
            log.exception(f'progress observer failed on ``{signal_name}``')


def build_client() -> httpx.AsyncClient:
    """
    Creates the httpx client used to read the TMS api (headers, timeouts, limits).
    """
    headers: dict[str, str] = {'user-agent': USER_AGENT, 'accept': 'application/json'}
    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=30.0)
    limits: httpx.Limits = httpx.Limits(max_keepalive_connections=2, max_connections=2)
    return httpx.AsyncClient(headers=headers, timeout=timeout, limits=limits)


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Requires the export-configuration path.
    - Accepts an optional credentials path, output-dir override, and test-limit override.
    - Exposes a parse helper to support testing with custom argv.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Export a TMS collection to csv.')
        parser.add_argument('--config-path', required=True, type=Path, help='Export configuration json')
        parser.add_argument(
            '--credentials-path',
            type=Path,
            default=None,
            help='Optional. Credentials json; defaults to the TMS_API_KEY / TMS_USERNAME / TMS_PASSWORD env-vars.',
        )
        parser.add_argument('--output-dir', type=Path, default=None, help='Optional. Overrides `outputDirectory`.')
        parser.add_argument(
            '--test-limit',
            type=int,
            default=None,
            metavar='INTEGER',
            help='Optional. Stop after this many objects have been exported (overrides `debug.limit`).',
        )
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        parser: argparse.ArgumentParser = CLI.build_parser()
        args: argparse.Namespace = parser.parse_args(argv)
        if args.test_limit is not None and args.test_limit < 1:
            parser.error('--test-limit must be a positive integer')
        return args


def load_export_config(args: argparse.Namespace) -> ExportConfig:
    """
    Loads the export configuration and applies the cli overrides.
    Called by: run_export()
    """
    export_config: ExportConfig = ExportConfig.from_path(args.config_path)
    if args.output_dir is not None:
        export_config = dataclasses.replace(export_config, output_directory=args.output_dir.expanduser())
    if args.test_limit is not None:
        export_config = dataclasses.replace(export_config, debug_limit=args.test_limit)
    return export_config


def install_cancel_handlers(exporter: TmsExporter) -> None:
    loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, exporter.cancel_export)
        except NotImplementedError:
            log.debug(f'signal handlers not supported here; ``{sig.name}`` will not cancel cooperatively')


async def run_export(args: argparse.Namespace) -> int:
    """
    Loads config and credentials, runs the export, and prints a summary.
    Called by: main()
    """
    start_time: datetime = datetime.now()
    try:
        export_config: ExportConfig = load_export_config(args)
        credentials: Credentials = Credentials.load(args.credentials_path)
    except ConfigurationError as exc:
        log.error(f'{exc}')
        return 2

    exporter = TmsExporter(credentials, progress=TqdmProgress())
    install_cancel_handlers(exporter)
    try:
        result: dict[str, object] = await exporter.export_csv(export_config)
    except DirectoryCreationError as exc:
        log.error(f'{exc}')
        return 2

    ## wrap up output -----------------------------------------------
    elapsed: timedelta = datetime.now() - start_time
    csv_path: Path = Path(result['csv'])  # type: ignore[arg-type]
    csv_size: int = csv_path.stat().st_size if csv_path.exists() else 0
    status: ExportStatus = result['status']  # type: ignore[assignment]
    print(
        f'Done. Status {status.value}; exported {result["processed"]} of {result["total"]} object(s) '
        f'in {humanize.naturaldelta(elapsed)}.'
    )
    print(f'Objects CSV:  {csv_path} ({humanize.naturalsize(csv_size)})')
    print(f'Warnings CSV: {csv_path.parent / "warnings.csv"}')
    print(f'Meta JSON:    {csv_path.parent / "meta.json"}')
    return 0 if status is ExportStatus.COMPLETED else 1


def _now_epoch_millis() -> int:
    """
    Returns the current time in epoch milliseconds; used for naming run directories.
    """
    return int(time.time() * 1000)


def main(argv: list[str] | None = None) -> int:
    """
    Parses cli args and runs the export.
    Called by: dundermain
    """
    args: argparse.Namespace = CLI.parse_args(argv)
    return asyncio.run(run_export(args))


if __name__ == '__main__':
    raise SystemExit(main())
