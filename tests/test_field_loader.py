import json
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

from field_loader import (
    CancelToken,
    PayloadDecodeError,
    PayloadLoader,
    PayloadRequestError,
)
from field_products import LoadStatus, Query, create_total_cloud_water


def _scalar_record():
    header = {
        "lo1": 0,
        "la1": 1,
        "dx": 1,
        "dy": 1,
        "nx": 2,
        "ny": 2,
        "refTime": "2014-01-31T00:00:00Z",
        "forecastTime": 0,
    }
    return [{"header": header, "data": [0.1, 0.2, 0.3, 0.4]}]


class LocalPayloadLoaderTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.loader = PayloadLoader(root=self.root, retries=2, backoff_seconds=0.0, max_workers=4)

    def tearDown(self):
        self.loader.close()
        self._tmp.cleanup()

    def _write(self, path, payload):
        target = self.root / path.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8")

    def test_load_payload_reads_json_under_root(self):
        self._write("/data/oscar/catalog.json", ["a", "b"])
        self.assertFalse(self.loader.is_remote)
        self.assertEqual(self.loader.load_payload("/data/oscar/catalog.json"), ["a", "b"])

    def test_missing_file_raises_after_retries(self):
        with patch("field_loader.time.sleep") as mocked_sleep:
            with self.assertRaises(PayloadRequestError):
                self.loader.load_payload("/data/missing.json")
        self.assertEqual(mocked_sleep.call_count, 1)

    def test_invalid_json_is_a_decode_error(self):
        self._write("/data/broken.json", "{not json")
        with self.assertRaises(PayloadDecodeError):
            self.loader.load_payload("/data/broken.json")

    def test_empty_path_rejected(self):
        with self.assertRaises(PayloadRequestError):
            self.loader.load_payload("")

    def test_load_all_preserves_path_order(self):
        delays = {"first": 0.05, "second": 0.0, "third": 0.02}

        def slow_load(path):
            time.sleep(delays[path])
            return path.upper()

        with patch.object(self.loader, "load_payload", side_effect=slow_load):
            payloads = self.loader.load_all(["first", "second", "third"])
        self.assertEqual(payloads, ["FIRST", "SECOND", "THIRD"])

    def test_load_all_propagates_first_failure(self):
        self._write("/data/a.json", {"ok": True})
        with patch("field_loader.time.sleep"):
            with self.assertRaises(PayloadRequestError):
                self.loader.load_all(["/data/a.json", "/data/b.json"])

    def test_submit_returns_future_with_outcome(self):
        product = create_total_cloud_water(Query(param="wind", date="2014/01/31", hour="0000"))
        self._write(product.paths[0], _scalar_record())
        future = self.loader.submit(product)
        outcome = future.result(timeout=5)
        self.assertEqual(outcome.status, LoadStatus.LOADED)
        self.assertAlmostEqual(product.interpolate(0.5, 0.5), 0.25)

    def test_submit_with_cancel_discards_result(self):
        product = create_total_cloud_water(Query(param="wind", date="2014/01/31", hour="0000"))
        self._write(product.paths[0], _scalar_record())
        cancel = CancelToken()
        gate = threading.Event()
        original = self.loader.load_all

        def gated_load_all(paths):
            payloads = original(paths)
            gate.wait(timeout=5)
            return payloads

        with patch.object(self.loader, "load_all", side_effect=gated_load_all):
            future = self.loader.submit(product, cancel)
            cancel.cancel()
            gate.set()
            outcome = future.result(timeout=5)
        self.assertEqual(outcome.status, LoadStatus.DISCARDED)
        self.assertFalse(product.bound)


class RemotePayloadLoaderTests(unittest.TestCase):
    def _response(self, text):
        response = MagicMock()
        response.text = text
        response.raise_for_status.return_value = None
        return response

    def test_resolve_joins_base_url(self):
        loader = PayloadLoader(root="https://earth.example.org/", session=MagicMock())
        self.assertTrue(loader.is_remote)
        self.assertEqual(loader.resolve("/data/oscar/catalog.json"), "https://earth.example.org/data/oscar/catalog.json")
        loader.close()

    def test_retries_transient_failures_with_backoff(self):
        session = MagicMock()
        session.get.side_effect = [requests.ConnectionError("reset"), self._response('["x"]')]
        loader = PayloadLoader(root="https://earth.example.org", retries=3, backoff_seconds=0.5, timeout_seconds=7, session=session)
        with patch("field_loader.time.sleep") as mocked_sleep:
            payload = loader.load_payload("/data/oscar/catalog.json")
        self.assertEqual(payload, ["x"])
        mocked_sleep.assert_called_once_with(0.5)
        session.get.assert_called_with("https://earth.example.org/data/oscar/catalog.json", timeout=7.0)
        loader.close()
        session.close.assert_called_once()

    def test_http_error_exhausts_retries(self):
        session = MagicMock()
        response = self._response("")
        response.raise_for_status.side_effect = requests.HTTPError("404")
        session.get.return_value = response
        loader = PayloadLoader(root="http://earth.example.org", retries=3, backoff_seconds=0.1, session=session)
        with patch("field_loader.time.sleep") as mocked_sleep:
            with self.assertRaises(PayloadRequestError):
                loader.load_payload("/data/weather/current/current-wind-surface-level-gfs-1.0.json")
        self.assertEqual(session.get.call_count, 3)
        self.assertEqual([c.args[0] for c in mocked_sleep.call_args_list], [0.1, 0.2])
        loader.close()


if __name__ == "__main__":
    unittest.main()
