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
Fetches a single wordpress.org plugin page and prints its metadata as JSON.
Handy for checking the selectors against a live page before running a whole batch.
"""

import argparse
import json
import sys
from datetime import datetime
from typing import Any

import httpx

from gather_plugin_metadata import (
    DEFAULT_MAX_ATTEMPTS,
    TIMEOUT,
    USER_AGENT,
    FieldExtractor,
    PageFetcher,
    PluginMetadataRecord,
    RetryController,
    ScrapeError,
)


def build_output(record: PluginMetadataRecord, start_time: datetime) -> dict[str, Any]:
    """Wrap the record with a small meta block."""
    return {
        '_meta_': {
            'timestamp': start_time.astimezone().isoformat(),
            'elapsed_seconds': round((datetime.now() - start_time).total_seconds(), 1),
            'url': record.url,
        },
        'plugin_meta': record.as_dict(),
    }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse cli args.
    """
    parser = argparse.ArgumentParser(description='Fetch one plugin page and print its metadata as JSON.')
    parser.add_argument(
        '--url',
        required=True,
        help='Plugin page url (e.g., https://wordpress.org/plugins/akismet/)',
    )
    parser.add_argument(
        '--max-attempts',
        type=int,
        default=DEFAULT_MAX_ATTEMPTS,
        help=f'Attempts when rate-limited (default: {DEFAULT_MAX_ATTEMPTS}).',
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, transport: httpx.BaseTransport | None = None) -> int:
    """
    Main manager.
    """
    args = parse_args(argv)
    start_time = datetime.now()

    headers = {
        'User-Agent': USER_AGENT,
    }
    with httpx.Client(headers=headers, timeout=TIMEOUT, transport=transport) as client:
        retry_controller = RetryController(PageFetcher(client, FieldExtractor()), max_attempts=args.max_attempts)
        try:
            record = retry_controller.fetch(args.url)
        except ScrapeError as exc:
            print(f'Error processing {args.url}: {exc}', file=sys.stderr)
            return 1

    print(json.dumps(build_output(record, start_time), indent=2, ensure_ascii=False))
    return 0


if __name__ == '__main__':
    sys.exit(main())
