# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "beautifulsoup4",
#   "httpx",
#   "humanize",
#   "tqdm"
# ]
# ///

"""
Gathers metadata for a list of wordpress.org plugin pages and writes it to a CSV file.
It's server-friendly, in that it makes synchronous requests with a random pause between pages,
  and backs off for 30-59 seconds whenever the site answers with a 429.

Usage:
  uv run ./gather_plugin_metadata.py --input-csv ./plugin_urls.csv --output-csv ./plugin_meta_results.csv

Args:
  --input-csv (optional) -- defaults to `plugin_urls.csv`; header row, then one url per row in the first column
  --output-csv (optional) -- defaults to `plugin_meta_results.csv`
  --log-file (optional) -- defaults to `scraper.log`; overwritten each run
  --max-attempts (optional) -- attempts per url when rate-limited; defaults to 3
"""

import argparse
import csv
import logging
import os
import random
import sys
import time
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path

import httpx
import humanize
from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup
from bs4.element import Tag
from tqdm import tqdm

## setup logging
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
LOG_FORMAT: str = '[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s'
LOG_DATEFMT: str = '%d/%b/%Y %H:%M:%S'
log = logging.getLogger(__name__)


## constants
DEFAULT_INPUT_CSV: str = 'plugin_urls.csv'
DEFAULT_OUTPUT_CSV: str = 'plugin_meta_results.csv'
DEFAULT_LOG_FILE: str = 'scraper.log'
DEFAULT_MAX_ATTEMPTS: int = 3

RATE_LIMIT_STATUS: int = 429
BACKOFF_SECONDS_RANGE: tuple[int, int] = (30, 59)  # inclusive
PAUSE_SECONDS_RANGE: tuple[int, int] = (1, 5)  # inclusive, between urls

USER_AGENT: str = 'wp-plugin-meta-gatherer/1.0'
TIMEOUT: httpx.Timeout = httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=30.0)

TITLE_SELECTOR: str = 'h1.plugin-title'
META_ITEM_SELECTOR: str = 'div.entry-meta > div.widget.plugin-meta > ul > li'

## (field, csv-header-label, default) -- column order of the output file
FIELD_TABLE: list[tuple[str, str, str]] = [
    ('url', 'URL', 'N/A'),
    ('name', 'Name', 'Unknown'),
    ('version', 'Version', '0.0.0'),
    ('last_updated', 'Last Updated', 'N/A'),
    ('active_installs', 'Active Installations', 'N/A'),
    ('min_wp_version', 'WordPress Version', 'N/A'),
    ('tested_up_to', 'Tested Up To', 'N/A'),
    ('min_php_version', 'PHP Version', 'N/A'),
    ('languages', 'Languages', 'N/A'),
    ('tags', 'Tags', 'N/A'),
]
FIELD_DEFAULTS: dict[str, str] = {field: default for field, _label, default in FIELD_TABLE}
CSV_HEADERS: list[str] = [label for _field, label, _default in FIELD_TABLE]

## (label-substring, field, sub-element selector) -- evaluated in order, first match wins
LABEL_RULES: list[tuple[str, str, str]] = [
    ('Version', 'version', 'strong'),
    ('Last updated', 'last_updated', 'strong'),
    ('Active installations', 'active_installs', 'strong'),
    ('WordPress version', 'min_wp_version', 'strong'),
    ('Tested up to', 'tested_up_to', 'strong'),
    ('PHP version', 'min_php_version', 'strong'),
    ('Languages', 'languages', 'button'),
    ('Tags', 'tags', '.tags'),
]


## errors -----------------------------------------------------------


class ScrapeError(Exception):
    """
    Base class for errors raised while processing a single plugin url.
    """

    def __init__(self, message: str, url: str) -> None:
        super().__init__(message)
        self.url: str = url


class FetchError(ScrapeError):
    """
    Transport-level failure (dns, connection, timeout).
    """

    def __init__(self, url: str, cause: Exception) -> None:
        super().__init__(f'request failed for {url}: {cause}', url)
        self.cause: Exception = cause


class HTTPStatusError(ScrapeError):
    """
    The server answered with something other than 200.
    """

    def __init__(self, url: str, status_code: int) -> None:
        super().__init__(f'invalid HTTP status: {status_code}', url)
        self.status_code: int = status_code


class ParseError(ScrapeError):
    pass


class MaxRetriesExceededError(ScrapeError):
    """
    Every attempt was rate-limited; wraps the last error seen.
    """

    def __init__(self, url: str, attempts: int, last_error: ScrapeError) -> None:
        super().__init__(f'maximum retry count reached ({attempts}): {last_error}', url)
        self.attempts: int = attempts
        self.last_error: ScrapeError = last_error


## data model -------------------------------------------------------


@dataclass(frozen=True)
class PluginMetadataRecord:
    """
    One row of output; every field holds either a scraped value or its default from FIELD_TABLE.
    """

    url: str
    name: str
    version: str
    last_updated: str
    active_installs: str
    min_wp_version: str
    tested_up_to: str
    min_php_version: str
    languages: str
    tags: str

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> 'PluginMetadataRecord':
        """
        Builds a record from whatever fields were found, filling the rest with defaults.
        """
        filled: dict[str, str] = apply_defaults(fields)
        return cls(**filled)

    @classmethod
    def defaults_for(cls, url: str) -> 'PluginMetadataRecord':
        """
        Builds the all-defaults record used when a url could not be processed.
        """
        return cls.from_fields({'url': url})

    def as_dict(self) -> dict[str, str]:
        return asdict(self)

    def as_row(self) -> list[str]:
        values: dict[str, str] = self.as_dict()
        return [values[field] for field, _label, _default in FIELD_TABLE]


def apply_defaults(fields: dict[str, str]) -> dict[str, str]:
    """
    Returns a full field dict, replacing missing or empty values with FIELD_DEFAULTS entries.
    Called by: PluginMetadataRecord.from_fields()
    """
    filled: dict[str, str] = {}
    for field, default in FIELD_DEFAULTS.items():
        value: str = fields.get(field) or ''
        if not value:
            value = default
            log.info(f'Set default value: {field}={default}')
        filled[field] = value
    return filled


## core -------------------------------------------------------------


class FieldExtractor:
    """
    Pulls plugin metadata out of a parsed wordpress.org plugin page.
    - Reads the plugin name from the title heading.
    - Walks the summary-list items and classifies each one against LABEL_RULES.
    - Stops at the first matching rule per item; an item never fills more than one field.
    - Strips whitespace from everything it returns; empty values are treated as not found.
    - Leaves unfound fields out of the result; `build_record()` fills them with defaults.
    """

    def __init__(self, label_rules: list[tuple[str, str, str]] | None = None) -> None:
        self.label_rules: list[tuple[str, str, str]] = label_rules if label_rules is not None else LABEL_RULES

    def extract(self, soup: BeautifulSoup) -> dict[str, str]:
        fields: dict[str, str] = {}
        title = soup.select_one(TITLE_SELECTOR)
        if title is not None:
            name: str = title.get_text().strip()
            if name:
                fields['name'] = name
        for item in soup.select(META_ITEM_SELECTOR):
            match: tuple[str, str] | None = self.classify_item(item)
            if match is None:
                continue
            field, value = match
            if value:
                fields[field] = value
        log.debug(f'extracted fields: {fields}')
        return fields

    def classify_item(self, item: Tag) -> tuple[str, str] | None:
        """
        Returns (field, value) for the first rule whose label occurs in the item's text.
        """
        text: str = item.get_text()
        for label, field, selector in self.label_rules:
            if label in text:
                return (field, self.sub_element_text(item, selector))
        return None

    @staticmethod
    def sub_element_text(item: Tag, selector: str) -> str:
        return ''.join(el.get_text() for el in item.select(selector)).strip()

    def build_record(self, url: str, soup: BeautifulSoup) -> PluginMetadataRecord:
        fields: dict[str, str] = self.extract(soup)
        fields['url'] = url
        return PluginMetadataRecord.from_fields(fields)


class PageFetcher:
    """
    Fetches and parses a single plugin page; performs exactly one request per call.
    - Translates httpx transport errors into FetchError.
    - Raises HTTPStatusError for any status other than 200; the retry layer inspects its code.
    - Parses the body with BeautifulSoup and hands the tree to the FieldExtractor.
    """

    def __init__(
        self, client: httpx.Client, extractor: FieldExtractor | None = None, logger: logging.Logger | None = None
    ) -> None:
        self.client: httpx.Client = client
        self.extractor: FieldExtractor = extractor if extractor is not None else FieldExtractor()
        self.log: logging.Logger = logger if logger is not None else log

    def fetch(self, url: str) -> PluginMetadataRecord:
        self.log.info(f'Starting scrape: {url}')
        start_time: datetime = datetime.now()
        try:
            resp: httpx.Response = self.client.get(url, follow_redirects=True)
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            self.log.warning(f'HTTP GET request failed: {exc!r}')
            raise FetchError(url, exc) from exc

        if resp.status_code != httpx.codes.OK:
            self.log.warning(f'Invalid HTTP status: {resp.status_code} for {url}')
            raise HTTPStatusError(url, resp.status_code)

        try:
            soup = BeautifulSoup(resp.text, 'html.parser')
        except ParserRejectedMarkup as exc:
            self.log.warning(f'Failed to parse HTML: {exc}')
            raise ParseError(f'failed to parse HTML for {url}: {exc}', url) from exc

        record: PluginMetadataRecord = self.extractor.build_record(url, soup)
        self.log.info(f'Completed scrape: {url} (duration: {_elapsed(start_time)})')
        return record


class RetryController:
    """
    Retries a fetch only when the site rate-limits us (429).
    - Sleeps a random 30-59 seconds between rate-limited attempts.
    - Re-raises every other error immediately.
    - Raises MaxRetriesExceededError once `max_attempts` rate-limited attempts are used up.
    """

    def __init__(
        self, fetcher: PageFetcher, max_attempts: int = DEFAULT_MAX_ATTEMPTS, logger: logging.Logger | None = None
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f'max_attempts must be at least 1; got {max_attempts}')
        self.fetcher: PageFetcher = fetcher
        self.max_attempts: int = max_attempts
        self.log: logging.Logger = logger if logger is not None else log

    def fetch(self, url: str) -> PluginMetadataRecord:
        last_error: HTTPStatusError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.fetcher.fetch(url)
            except HTTPStatusError as exc:
                if exc.status_code != RATE_LIMIT_STATUS:
                    raise
                last_error = exc
            if attempt < self.max_attempts:
                backoff_s: int = random.randint(*BACKOFF_SECONDS_RANGE)
                self.log.warning(
                    f'429 error. Retrying after {backoff_s} seconds (attempt {attempt}/{self.max_attempts}): {url}'
                )
                _sleep(backoff_s)
        assert last_error is not None
        self.log.error(f'Gave up after {self.max_attempts} rate-limited attempts: {url}')
        raise MaxRetriesExceededError(url, self.max_attempts, last_error) from last_error


class BatchOrchestrator:
    """
    Runs every input url through the RetryController, one at a time.
    - Catches per-url ScrapeErrors and records an all-defaults row instead, so the batch always completes.
    - Keeps output order and length identical to the input.
    - Pauses a random 1-5 seconds between urls.
    """

    def __init__(self, retry_controller: RetryController, logger: logging.Logger | None = None) -> None:
        self.retry_controller: RetryController = retry_controller
        self.log: logging.Logger = logger if logger is not None else log

    def run(self, urls: Sequence[str]) -> list[PluginMetadataRecord]:
        records: list[PluginMetadataRecord] = []
        for idx, url in enumerate(tqdm(urls, total=len(urls), desc='Processing plugins')):
            records.append(self.process_url(url))
            if idx < len(urls) - 1:
                pause_s: int = random.randint(*PAUSE_SECONDS_RANGE)
                self.log.debug(f'pausing {pause_s} seconds before next url')
                _sleep(pause_s)
        return records

    def process_url(self, url: str) -> PluginMetadataRecord:
        self.log.info(f'Processing URL: {url}')
        start_time: datetime = datetime.now()
        try:
            record: PluginMetadataRecord = self.retry_controller.fetch(url)
        except ScrapeError as exc:
            self.log.warning(f'Error processing {url}: {exc}')
            record = PluginMetadataRecord.defaults_for(url)
        self.log.info(f'Completed processing URL: {url} (duration: {_elapsed(start_time)})')
        return record


## i/o --------------------------------------------------------------


class UrlListReader:
    """
    Reads the input csv: a header row, then one url per row in the first column.
    """

    @staticmethod
    def read(path: Path) -> list[str]:
        urls: list[str] = []
        with path.open('r', encoding='utf-8', newline='') as fh:
            reader = csv.reader(fh)
            header: list[str] | None = next(reader, None)
            if header is None:
                log.warning(f'input csv is empty: {path}')
                return urls
            for row in reader:
                if not row:
                    continue
                url: str = row[0].strip()
                if url:
                    urls.append(url)
        return urls


class CsvExporter:
    """
    Writes records to the output csv, header labels first, columns in FIELD_TABLE order.
    """

    @staticmethod
    def write(records: Iterable[PluginMetadataRecord], path: Path) -> None:
        with path.open('w', encoding='utf-8', newline='') as fh:
            writer = csv.writer(fh)
            writer.writerow(CSV_HEADERS)
            for record in records:
                writer.writerow(record.as_row())

    @staticmethod
    def read(path: Path) -> tuple[list[str], list[list[str]]]:
        """
        Re-reads an exported file as (header, rows).
        """
        with path.open('r', encoding='utf-8', newline='') as fh:
            reader = csv.reader(fh)
            header: list[str] = next(reader, [])
            rows: list[list[str]] = [row for row in reader]
        return header, rows


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Every option is optional; the defaults match the file names the gatherer has always used.
    - Exposes a parse helper to support testing with custom argv.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Gather wordpress.org plugin metadata into a CSV file.')
        parser.add_argument('--input-csv', default=DEFAULT_INPUT_CSV, help='CSV with a header row and one url per row')
        parser.add_argument('--output-csv', default=DEFAULT_OUTPUT_CSV, help='CSV file to write results to')
        parser.add_argument('--log-file', default=DEFAULT_LOG_FILE, help='Log file; overwritten each run')
        parser.add_argument(
            '--max-attempts',
            type=int,
            default=DEFAULT_MAX_ATTEMPTS,
            metavar='INTEGER',
            help=f'Attempts per url when rate-limited (default: {DEFAULT_MAX_ATTEMPTS}).',
        )
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        parser: argparse.ArgumentParser = CLI.build_parser()
        args: argparse.Namespace = parser.parse_args(argv)
        if args.max_attempts < 1:
            parser.error('--max-attempts must be at least 1')
        return args


## helpers ----------------------------------------------------------


def configure_logging(log_path: Path) -> logging.FileHandler:
    """
    Sends log output to `log_path` (truncating it) and returns the handler so the caller can close it.
    """
    handler = logging.FileHandler(log_path, mode='w', encoding='utf-8')
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root = logging.getLogger()
    root.setLevel(log_level)
    root.addHandler(handler)
    ## prevent httpx from logging
    if log_level <= logging.INFO:
        for noisy in ('httpx', 'httpcore'):
            lg = logging.getLogger(noisy)
            lg.setLevel(logging.WARNING)  # or logging.ERROR if you prefer only errors
            lg.propagate = False  # don't bubble up to root
    return handler


def _elapsed(start_time: datetime) -> str:
    elapsed: timedelta = datetime.now() - start_time
    return humanize.precisedelta(elapsed, minimum_unit='milliseconds')


def _sleep(seconds: float) -> None:
    """
    Sleeps for given seconds; centralizes sleep for easier tweaking (and patching in tests).
    """
    time.sleep(seconds)


def main(argv: list[str] | None = None) -> int:
    """
    Reads plugin urls, gathers metadata for each, and writes the results csv.

    Flow:
    - Parses CLI args and opens the log file (closed again on every exit path).
    - Reads the url list; an unreadable input file aborts the run.
    - Creates an httpx client and wires PageFetcher -> RetryController -> BatchOrchestrator.
    - Processes every url; per-url failures become all-defaults rows.
    - Writes the output csv; an unwritable output file aborts the run.

    Called by: dundermain
    """
    ## handle args --------------------------------------------------
    args: argparse.Namespace = CLI.parse_args(argv)
    input_path: Path = Path(args.input_csv).expanduser()
    output_path: Path = Path(args.output_csv).expanduser()
    log_path: Path = Path(args.log_file).expanduser()

    ## open log file ------------------------------------------------
    try:
        handler: logging.FileHandler = configure_logging(log_path)
    except OSError as exc:
        print(f'Failed to create log file: {exc}', file=sys.stderr)
        return 1

    try:
        log.info('Starting scraping process')

        ## read urls ------------------------------------------------
        try:
            urls: list[str] = UrlListReader.read(input_path)
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            log.critical(f'Failed to read URLs from {input_path}: {exc}')
            print(f'Failed to read URLs from {input_path}: {exc}', file=sys.stderr)
            return 1
        log.info(f'Loaded {len(urls)} URLs')

        ## gather metadata ------------------------------------------
        headers: dict[str, str] = {'user-agent': USER_AGENT}
        with httpx.Client(headers=headers, timeout=TIMEOUT) as client:
            fetcher = PageFetcher(client, FieldExtractor(), logger=log)
            retry_controller = RetryController(fetcher, max_attempts=args.max_attempts, logger=log)
            orchestrator = BatchOrchestrator(retry_controller, logger=log)
            records: list[PluginMetadataRecord] = orchestrator.run(urls)

        ## export ---------------------------------------------------
        try:
            CsvExporter.write(records, output_path)
        except OSError as exc:
            log.critical(f'Failed to export to CSV {output_path}: {exc}')
            print(f'Failed to export to CSV {output_path}: {exc}', file=sys.stderr)
            return 1

        log.info('Scraping process completed')
    finally:
        logging.getLogger().removeHandler(handler)
        handler.close()

    ## wrap up output -----------------------------------------------
    print('Plugin metadata exported to CSV. Please check the log file for details.')
    return 0

    ## end def main()


if __name__ == '__main__':
    raise SystemExit(main())
