from __future__ import annotations

from collections import OrderedDict
from datetime import datetime
import logging
import os
import threading
import time
from typing import Dict, List, Mapping, Tuple

import numpy as np

from field_catalog import load_catalog
from field_grid import FieldKind, is_value
from field_loader import CancelToken, PayloadLoader
from field_products import OSCAR_CATALOG, OSCAR_CATALOG_PATH, LoadOutcome, LoadStatus, Product, Query
from field_registry import ProductRegistry, default_registry

PRODUCT_CACHE_MAX_ENTRIES = max(1, int(os.getenv("EARTH_PRODUCT_CACHE_MAX_ENTRIES", "32")))
PRODUCT_CACHE_TTL_SECONDS = float(os.getenv("EARTH_PRODUCT_CACHE_TTL_SECONDS", "1800"))
CATALOG_PATHS = {OSCAR_CATALOG: OSCAR_CATALOG_PATH}
LOGGER = logging.getLogger("earth_fields.store")


class ProductStore:
    """Resolves queries to products and keeps recently bound products in memory."""

    def __init__(
        self,
        registry: ProductRegistry | None = None,
        loader: PayloadLoader | None = None,
        cache_max_entries: int = PRODUCT_CACHE_MAX_ENTRIES,
        cache_ttl_seconds: float = PRODUCT_CACHE_TTL_SECONDS,
    ) -> None:
        self.registry = registry or default_registry()
        self.loader = loader or PayloadLoader()
        self._cache_max_entries = max(1, int(cache_max_entries))
        self._cache_ttl_seconds = float(cache_ttl_seconds)
        self._cache: "OrderedDict[Tuple[str, ...], Tuple[float, Product]]" = OrderedDict()
        self._cache_guard = threading.Lock()
        self._key_locks: Dict[Tuple[str, ...], threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    def ensure_catalogs(self, query: Query) -> None:
        for name in self.registry.missing_catalogs(query):
            path = CATALOG_PATHS.get(name)
            if path is None:
                raise RuntimeError(f"No source configured for catalog {name}")
            with self._get_key_lock(("catalog", name)):
                if self.registry.has_catalog(name):
                    continue
                self.registry.add_catalog(name, load_catalog(self.loader, path))

    def products(self, attributes: Query | Mapping[str, object]) -> List[Product]:
        query = attributes if isinstance(attributes, Query) else Query.from_attributes(attributes)
        self.ensure_catalogs(query)
        return self.registry.resolve(query)

    def product(self, attributes: Query | Mapping[str, object], type_id: str) -> Product | None:
        self.registry.descriptor(type_id)
        for product in self.products(attributes):
            if product.type_id == type_id:
                return product
        return None

    def load(self, product: Product, cancel: CancelToken | None = None) -> LoadOutcome:
        key = product.cache_key
        cached = self._cache_get(key)
        if cached is not None:
            return LoadOutcome(LoadStatus.LOADED, cached)

        with self._get_key_lock(key):
            cached = self._cache_get(key)
            if cached is not None:
                return LoadOutcome(LoadStatus.LOADED, cached)
            outcome = product.load(self.loader, cancel)
            if outcome.loaded:
                self._cache_put(key, product)
            return outcome

    def bound_products(self, attributes: Query | Mapping[str, object]) -> List[Product]:
        bound: List[Product] = []
        for product in self.products(attributes):
            outcome = self.load(product)
            if outcome.loaded:
                bound.append(outcome.product)
        return bound

    def navigate(self, attributes: Query | Mapping[str, object], type_id: str, step: int) -> datetime | None:
        product = self.product(attributes, type_id)
        if product is None:
            return None
        return product.navigate(step)

    def value_range(self, attributes: Query | Mapping[str, object], type_id: str) -> Tuple[float, float] | None:
        product = self.product(attributes, type_id)
        if product is None:
            return None
        outcome = self.load(product)
        if not outcome.loaded:
            return None
        return sample_range(outcome.product)

    def close(self) -> None:
        with self._cache_guard:
            self._cache.clear()
        self.loader.close()

    def _cache_get(self, key: Tuple[str, ...]) -> Product | None:
        now = time.monotonic()
        with self._cache_guard:
            item = self._cache.get(key)
            if item is None:
                return None
            ts, product = item
            if self._cache_ttl_seconds > 0 and now - ts > self._cache_ttl_seconds:
                self._cache.pop(key, None)
                self._prune_orphan_locks()
                return None
            self._cache.move_to_end(key)
            return product

    def _cache_put(self, key: Tuple[str, ...], product: Product) -> None:
        with self._cache_guard:
            self._cache[key] = (time.monotonic(), product)
            self._cache.move_to_end(key)
            while len(self._cache) > self._cache_max_entries:
                evicted, _ = self._cache.popitem(last=False)
                LOGGER.debug("Evicted product key=%s", evicted)
            self._prune_orphan_locks()

    def _prune_orphan_locks(self) -> None:
        with self._key_locks_guard:
            stale = [
                k for k, lock in self._key_locks.items()
                if k not in self._cache and k[0] != "catalog" and not lock.locked()
            ]
            for key in stale:
                self._key_locks.pop(key, None)

    def _get_key_lock(self, key: Tuple[str, ...]) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock


def sample_range(product: Product) -> Tuple[float, float] | None:
    """Min and max over every defined sample; vectors contribute their magnitude."""
    grid = product.grid
    if grid is None:
        raise RuntimeError(f"Product {product.type_id} has not been loaded")
    values: List[float] = []

    def collect(lon: float, lat: float, sample: object) -> None:
        if not is_value(sample):
            return
        value = grid.sample_value(sample)
        if product.kind is FieldKind.VECTOR:
            values.append(float(value[2]))
        else:
            values.append(float(value))

    product.for_each_sample(collect)
    if not values:
        return None
    array = np.asarray(values, dtype=np.float64)
    return float(np.nanmin(array)), float(np.nanmax(array))
