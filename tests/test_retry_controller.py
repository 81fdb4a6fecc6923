import logging
import unittest
from collections.abc import Callable
from unittest import mock

import httpx

from gather_plugin_metadata import (
    FetchError,
    FieldExtractor,
    HTTPStatusError,
    MaxRetriesExceededError,
    PageFetcher,
    ParseError,
    PluginMetadataRecord,
    RetryController,
)

PLUGIN_URL: str = 'https://wordpress.org/plugins/sample-plugin/'
PLUGIN_HTML: str = (
    '<html><body><h1 class="plugin-title">Sample Plugin</h1>'
    '<div class="entry-meta"><div class="widget plugin-meta"><ul>'
    '<li>Version <strong>2.0.1</strong></li>'
    '<li>Tested up to <strong>6.5</strong></li>'
    '</ul></div></div></body></html>'
)
REJECTED_MARKUP: str = '<![foo bar]>x'  # html.parser refuses unknown marked sections


def scripted_handler(statuses: list[int], calls: list[str]) -> Callable[[httpx.Request], httpx.Response]:
    """
    Returns a MockTransport handler that answers with `statuses` in order, recording each requested url.
    """
    remaining: list[int] = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        status: int = remaining.pop(0)
        body: str = PLUGIN_HTML if status == 200 else 'nope'
        return httpx.Response(status, text=body)

    return handler


class TestPageFetcher(unittest.TestCase):
    """
    Tests the PageFetcher class (one request per call, no retries).
    """

    def test_returns_record_for_200(self) -> None:
        """
        Checks that a 200 page is parsed and the url is stamped onto the record.
        """
        calls: list[str] = []
        with httpx.Client(transport=httpx.MockTransport(scripted_handler([200], calls))) as client:
            record: PluginMetadataRecord = PageFetcher(client, FieldExtractor()).fetch(PLUGIN_URL)
        self.assertEqual(record.url, PLUGIN_URL)
        self.assertEqual(record.name, 'Sample Plugin')
        self.assertEqual(record.version, '2.0.1')
        self.assertEqual(record.tested_up_to, '6.5')
        self.assertEqual(record.tags, 'N/A')
        self.assertEqual(calls, [PLUGIN_URL])

    def test_non_200_raises_status_error(self) -> None:
        """
        Checks that the status code is carried on HTTPStatusError.
        """
        calls: list[str] = []
        with httpx.Client(transport=httpx.MockTransport(scripted_handler([503], calls))) as client:
            with self.assertRaises(HTTPStatusError) as ctx:
                PageFetcher(client).fetch(PLUGIN_URL)
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(ctx.exception.url, PLUGIN_URL)

    def test_transport_failure_raises_fetch_error(self) -> None:
        """
        Checks that httpx transport errors are wrapped, keeping the cause.
        """

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('connection refused', request=request)

        with httpx.Client(transport=httpx.MockTransport(handler)) as client:
            with self.assertRaises(FetchError) as ctx:
                PageFetcher(client).fetch(PLUGIN_URL)
        self.assertIsInstance(ctx.exception.cause, httpx.ConnectError)
        self.assertIs(ctx.exception.__cause__, ctx.exception.cause)

    def test_rejected_markup_raises_parse_error(self) -> None:
        """
        Checks that a 200 body the parser refuses becomes ParseError carrying the url.
        """
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text=REJECTED_MARKUP))
        with httpx.Client(transport=transport) as client:
            with self.assertRaises(ParseError) as ctx:
                PageFetcher(client).fetch(PLUGIN_URL)
        self.assertEqual(ctx.exception.url, PLUGIN_URL)
        self.assertIsNotNone(ctx.exception.__cause__)


class TestRetryController(unittest.TestCase):
    """
    Tests the RetryController class.
    """

    def build_controller(self, statuses: list[int], calls: list[str], max_attempts: int = 3) -> RetryController:
        client: httpx.Client = httpx.Client(transport=httpx.MockTransport(scripted_handler(statuses, calls)))
        self.addCleanup(client.close)
        return RetryController(PageFetcher(client, FieldExtractor()), max_attempts=max_attempts)

    def test_rate_limit_then_success(self) -> None:
        """
        Checks that a 429 followed by a 200 returns the parsed record after one backoff sleep in [30, 59].
        """
        calls: list[str] = []
        controller: RetryController = self.build_controller([429, 200], calls)
        with mock.patch('gather_plugin_metadata._sleep') as mock_sleep:
            record: PluginMetadataRecord = controller.fetch(PLUGIN_URL)
        self.assertEqual(record.version, '2.0.1')
        self.assertEqual(len(calls), 2)
        self.assertEqual(mock_sleep.call_count, 1)
        backoff_s: int = mock_sleep.call_args.args[0]
        self.assertGreaterEqual(backoff_s, 30)
        self.assertLessEqual(backoff_s, 59)

    def test_consecutive_rate_limits_exhaust_attempts(self) -> None:
        """
        Checks that three 429s with max_attempts=3 raise MaxRetriesExceededError wrapping the last 429.
        """
        calls: list[str] = []
        controller: RetryController = self.build_controller([429, 429, 429], calls, max_attempts=3)
        with mock.patch('gather_plugin_metadata._sleep') as mock_sleep:
            with self.assertRaises(MaxRetriesExceededError) as ctx:
                controller.fetch(PLUGIN_URL)
        self.assertEqual(len(calls), 3)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIsInstance(ctx.exception.last_error, HTTPStatusError)
        self.assertEqual(ctx.exception.last_error.status_code, 429)
        ## sleeps only between attempts
        self.assertEqual(mock_sleep.call_count, 2)
        for call in mock_sleep.call_args_list:
            self.assertTrue(30 <= call.args[0] <= 59)

    def test_other_status_fails_without_retry(self) -> None:
        """
        Checks that a 404 fails after exactly one attempt and no backoff sleep.
        """
        calls: list[str] = []
        controller: RetryController = self.build_controller([404, 200], calls)
        with mock.patch('gather_plugin_metadata._sleep') as mock_sleep:
            with self.assertRaises(HTTPStatusError) as ctx:
                controller.fetch(PLUGIN_URL)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(len(calls), 1)
        mock_sleep.assert_not_called()

    def test_fetch_error_is_not_retried(self) -> None:
        """
        Checks that transport errors are terminal for the url.
        """
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            raise httpx.ReadTimeout('timed out', request=request)

        client: httpx.Client = httpx.Client(transport=httpx.MockTransport(handler))
        self.addCleanup(client.close)
        controller: RetryController = RetryController(PageFetcher(client))
        with mock.patch('gather_plugin_metadata._sleep') as mock_sleep:
            with self.assertRaises(FetchError):
                controller.fetch(PLUGIN_URL)
        self.assertEqual(len(calls), 1)
        mock_sleep.assert_not_called()

    def test_parse_error_is_not_retried(self) -> None:
        """
        Checks that unparseable markup is terminal for the url: one request, no backoff sleep.
        """
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, text=REJECTED_MARKUP)

        client: httpx.Client = httpx.Client(transport=httpx.MockTransport(handler))
        self.addCleanup(client.close)
        controller: RetryController = RetryController(PageFetcher(client))
        with mock.patch('gather_plugin_metadata._sleep') as mock_sleep:
            with self.assertRaises(ParseError):
                controller.fetch(PLUGIN_URL)
        self.assertEqual(len(calls), 1)
        mock_sleep.assert_not_called()

    def test_logs_through_injected_logger(self) -> None:
        """
        Checks that fetch and backoff events go to the logger handed in, not only the module logger.
        """
        logger: logging.Logger = logging.getLogger('test_retry_controller.injected')
        client: httpx.Client = httpx.Client(transport=httpx.MockTransport(scripted_handler([429, 200], [])))
        self.addCleanup(client.close)
        controller: RetryController = RetryController(PageFetcher(client, logger=logger), logger=logger)
        with mock.patch('gather_plugin_metadata._sleep'):
            with self.assertLogs(logger, level='INFO') as logs:
                controller.fetch(PLUGIN_URL)
        output: str = '\n'.join(logs.output)
        self.assertIn('Invalid HTTP status: 429', output)
        self.assertIn('429 error. Retrying after', output)
        self.assertIn(f'Completed scrape: {PLUGIN_URL}', output)

    def test_rate_limit_then_not_found_stops(self) -> None:
        """
        Checks that a non-429 error after a 429 is raised as-is rather than retried.
        """
        calls: list[str] = []
        controller: RetryController = self.build_controller([429, 404, 200], calls)
        with mock.patch('gather_plugin_metadata._sleep'):
            with self.assertRaises(HTTPStatusError) as ctx:
                controller.fetch(PLUGIN_URL)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(len(calls), 2)

    def test_rejects_zero_attempts(self) -> None:
        """
        Checks that max_attempts below 1 is refused.
        """
        with self.assertRaises(ValueError):
            RetryController(mock.Mock(spec=PageFetcher), max_attempts=0)


if __name__ == '__main__':
    unittest.main()
