import sys
import unittest
from pathlib import Path
from unittest import mock

import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from route_poller import poll_gtfs
from route_poller.errors import DecodeError, NetworkTimeout, NetworkUnavailable, UnexpectedStatus

from feeds import encode, make_feed, vehicle_entity

FEED_URL = "http://gtfs.example.com/vehiclepositions.bin"


class StubResponse:
    def __init__(self, status_code: int, content: bytes = b"", chunks=None):
        self.status_code = status_code
        self.chunks = list(chunks) if chunks is not None else [content]
        self.closed = False

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class FetchFeedTest(unittest.TestCase):
    def test_returns_body_on_success(self):
        response = StubResponse(200, chunks=[b"\x0a", b"", b"\x00"])
        with mock.patch.object(poll_gtfs.requests, "get", return_value=response) as get:
            body = poll_gtfs.fetch_feed(FEED_URL, 10.0)

        self.assertEqual(body, b"\x0a\x00")
        get.assert_called_once_with(FEED_URL, timeout=10.0, stream=True)
        self.assertTrue(response.closed)

    def test_slow_body_hits_total_deadline(self):
        response = StubResponse(200, chunks=[b"\x0a", b"\x00", b"\x01", b"\x02"])
        # One second passes per chunk against a 2.5s budget.
        ticks = iter([100.0, 101.0, 102.0, 103.0, 104.0])
        with mock.patch.object(poll_gtfs.requests, "get", return_value=response), \
                mock.patch.object(poll_gtfs.time, "monotonic", side_effect=lambda: next(ticks)):
            with self.assertRaises(NetworkTimeout) as ctx:
                poll_gtfs.fetch_feed(FEED_URL, 2.5)

        self.assertIn("did not finish sending within 2.5s", str(ctx.exception))
        self.assertTrue(response.closed)

    def test_stalled_read_is_a_timeout(self):
        response = StubResponse(200, chunks=[b"\x0a", requests.ConnectionError("read timed out")])
        ticks = iter([0.0, 1.0, 11.0])
        with mock.patch.object(poll_gtfs.requests, "get", return_value=response), \
                mock.patch.object(poll_gtfs.time, "monotonic", side_effect=lambda: next(ticks)):
            with self.assertRaises(NetworkTimeout):
                poll_gtfs.fetch_feed(FEED_URL, 10.0)

    def test_dropped_connection_mid_body(self):
        response = StubResponse(200, chunks=[b"\x0a", requests.ConnectionError("reset by peer")])
        with mock.patch.object(poll_gtfs.requests, "get", return_value=response):
            with self.assertRaises(NetworkUnavailable):
                poll_gtfs.fetch_feed(FEED_URL, 10.0)
        self.assertTrue(response.closed)

    def test_timeout(self):
        with mock.patch.object(poll_gtfs.requests, "get", side_effect=requests.ReadTimeout("slow")):
            with self.assertRaises(NetworkTimeout) as ctx:
                poll_gtfs.fetch_feed(FEED_URL, 10.0)

        self.assertEqual(ctx.exception.stage, "fetch")
        self.assertIsInstance(ctx.exception.cause, requests.Timeout)

    def test_connect_timeout_is_a_timeout(self):
        with mock.patch.object(poll_gtfs.requests, "get", side_effect=requests.ConnectTimeout("syn")):
            with self.assertRaises(NetworkTimeout):
                poll_gtfs.fetch_feed(FEED_URL, 10.0)

    def test_connection_refused(self):
        with mock.patch.object(poll_gtfs.requests, "get", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(NetworkUnavailable) as ctx:
                poll_gtfs.fetch_feed(FEED_URL, 10.0)

        self.assertIn(FEED_URL, str(ctx.exception))

    def test_any_2xx_is_success(self):
        for status in (200, 204, 299):
            with mock.patch.object(poll_gtfs.requests, "get", return_value=StubResponse(status, b"")):
                self.assertEqual(poll_gtfs.fetch_feed(FEED_URL, 10.0), b"")

    def test_non_success_status(self):
        for status in (301, 404, 503):
            response = StubResponse(status, b"<html>")
            with mock.patch.object(poll_gtfs.requests, "get", return_value=response):
                with self.assertRaises(UnexpectedStatus) as ctx:
                    poll_gtfs.fetch_feed(FEED_URL, 10.0)
            self.assertEqual(ctx.exception.status_code, status)
            self.assertTrue(response.closed)


class DescribeFeedTest(unittest.TestCase):
    def test_lists_each_entity(self):
        feed = make_feed(
            [
                vehicle_entity("a", vehicle_id="4021", trip_id="T-1", direction_id=0, speed=3.0),
                vehicle_entity("b", route_id=None, vehicle_id=None, position=None),
            ]
        )

        lines = poll_gtfs.describe_feed(encode(feed))

        self.assertEqual(lines[0], "Feed header version: 2.0")
        self.assertIn("Number of entities: 2", lines)
        self.assertIn("  Route ID: 1", lines)
        self.assertIn("  Vehicle ID: 4021", lines)
        self.assertIn("  Direction ID: 0", lines)
        self.assertIn("  Bearing: None", lines)
        self.assertIn("  Trip data: NONE", lines)
        self.assertIn("  Vehicle descriptor: NONE", lines)
        self.assertIn("  Position: NONE", lines)

    def test_rejects_malformed_payload(self):
        with self.assertRaises(DecodeError):
            poll_gtfs.describe_feed(b"\xff\xff\xff")


class FeedDumpMainTest(unittest.TestCase):
    def test_prints_entities(self):
        raw = encode(make_feed([vehicle_entity("a", vehicle_id="4021")]))
        with mock.patch.object(poll_gtfs, "fetch_feed", return_value=raw) as fetch, \
                mock.patch("builtins.print") as printed:
            poll_gtfs.main(["--feed-url", FEED_URL, "--http-timeout", "5"])

        fetch.assert_called_once_with(FEED_URL, 5.0)
        output = [call.args[0] for call in printed.call_args_list]
        self.assertIn("Number of entities: 1", output)
        self.assertIn("  Vehicle ID: 4021", output)

    def test_http_timeout_from_environment(self):
        raw = encode(make_feed())
        with mock.patch.dict("os.environ", {"HTTP_TIMEOUT": "4"}, clear=True), \
                mock.patch.object(poll_gtfs, "fetch_feed", return_value=raw) as fetch, \
                mock.patch("builtins.print"):
            poll_gtfs.main(["--feed-url", FEED_URL])

        fetch.assert_called_once_with(FEED_URL, 4.0)

    def test_invalid_http_timeout_environment(self):
        with mock.patch.dict("os.environ", {"HTTP_TIMEOUT": "soon"}, clear=True):
            with self.assertRaises(SystemExit):
                poll_gtfs.parse_args([])

    def test_exits_on_fetch_failure(self):
        with mock.patch.object(poll_gtfs, "fetch_feed", side_effect=UnexpectedStatus(503, FEED_URL)), \
                mock.patch("builtins.print"):
            with self.assertRaises(SystemExit) as ctx:
                poll_gtfs.main(["--feed-url", FEED_URL])

        self.assertEqual(ctx.exception.code, 1)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
