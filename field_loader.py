from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import List, Sequence

import requests

DATA_ROOT = os.getenv("EARTH_DATA_ROOT", "public").strip() or "public"
FETCH_RETRIES = max(1, int(os.getenv("EARTH_FETCH_RETRIES", "3")))
FETCH_BASE_BACKOFF_SECONDS = float(os.getenv("EARTH_FETCH_BACKOFF_SECONDS", "0.4"))
FETCH_TIMEOUT_SECONDS = float(os.getenv("EARTH_FETCH_TIMEOUT_SECONDS", "20"))
FETCH_WORKERS = max(1, int(os.getenv("EARTH_FETCH_WORKERS", "4")))
LOGGER = logging.getLogger("earth_fields.loader")


class PayloadLoadError(RuntimeError):
    """Base class for payload retrieval failures."""


class PayloadRequestError(PayloadLoadError):
    """Raised when a payload cannot be retrieved."""


class PayloadDecodeError(PayloadLoadError):
    """Raised when a retrieved payload cannot be decoded."""


class CancelToken:
    """Cooperative cancellation flag checked once a load's fetches have settled."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()


class PayloadLoader:
    """Fetches JSON payloads from an http(s) base URL or a local data directory."""

    def __init__(
        self,
        root: str | Path = DATA_ROOT,
        retries: int = FETCH_RETRIES,
        backoff_seconds: float = FETCH_BASE_BACKOFF_SECONDS,
        timeout_seconds: float = FETCH_TIMEOUT_SECONDS,
        max_workers: int = FETCH_WORKERS,
        session: requests.Session | None = None,
    ) -> None:
        self._root = str(root)
        self._retries = max(1, int(retries))
        self._backoff_seconds = float(backoff_seconds)
        self._timeout_seconds = float(timeout_seconds)
        self._session = session
        self._session_guard = threading.Lock()
        # Separate pools: a load task blocks on its own fetches.
        self._fetch_executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="payload-fetch")
        self._task_executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="product-load")

    @property
    def is_remote(self) -> bool:
        return self._root.startswith(("http://", "https://"))

    def resolve(self, path: str) -> str:
        if self.is_remote:
            return self._root.rstrip("/") + "/" + path.lstrip("/")
        return str(Path(self._root) / path.lstrip("/"))

    def load_payload(self, path: str) -> object:
        if not path:
            raise PayloadRequestError("Cannot load a payload without a path")
        location = self.resolve(path)
        last_exc: Exception | None = None
        for attempt in range(1, self._retries + 1):
            try:
                text = self._read(location)
            except (requests.RequestException, OSError) as exc:
                last_exc = exc
                if attempt >= self._retries:
                    break
                delay = self._backoff_seconds * (2 ** (attempt - 1))
                LOGGER.warning("Payload fetch failed location=%s attempt=%d retry_in=%.2fs: %s", location, attempt, delay, exc)
                time.sleep(delay)
                continue
            try:
                return json.loads(text)
            except json.JSONDecodeError as exc:
                raise PayloadDecodeError(f"Payload at {location} is not valid JSON: {exc}") from exc

        raise PayloadRequestError(
            f"Payload fetch failed for {location} after {self._retries} attempts: {last_exc}"
        ) from last_exc

    def load_all(self, paths: Sequence[str]) -> List[object]:
        """Fetches every path concurrently; results keep the order of paths."""
        started = time.monotonic()
        payloads = list(self._fetch_executor.map(self.load_payload, paths))
        LOGGER.debug("Loaded payloads count=%d elapsed=%.3fs", len(payloads), time.monotonic() - started)
        return payloads

    def submit(self, product, cancel: CancelToken | None = None) -> Future:
        return self._task_executor.submit(product.load, self, cancel)

    def close(self) -> None:
        self._task_executor.shutdown(wait=False, cancel_futures=True)
        self._fetch_executor.shutdown(wait=False, cancel_futures=True)
        with self._session_guard:
            if self._session is not None:
                self._session.close()
                self._session = None

    def _read(self, location: str) -> str:
        if not self.is_remote:
            return Path(location).read_text(encoding="utf-8")
        response = self._http_session().get(location, timeout=self._timeout_seconds)
        response.raise_for_status()
        return response.text

    def _http_session(self) -> requests.Session:
        with self._session_guard:
            if self._session is None:
                self._session = requests.Session()
            return self._session
