from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Mapping, Tuple

from field_catalog import Catalog
from field_products import DEFAULT_DESCRIPTORS, FieldDescriptor, Product, Query

LOGGER = logging.getLogger("earth_fields.registry")


class ProductRegistry:
    """Descriptor table plus the catalogs some descriptors index time by."""

    def __init__(
        self,
        descriptors: Iterable[FieldDescriptor] = (),
        catalogs: Mapping[str, Catalog] | None = None,
    ) -> None:
        self._descriptors: Dict[str, FieldDescriptor] = {}
        self._catalogs: Dict[str, Catalog] = dict(catalogs or {})
        self._catalog_guard = threading.Lock()
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: FieldDescriptor) -> None:
        if descriptor.type_id in self._descriptors:
            raise ValueError(f"Descriptor already registered: {descriptor.type_id}")
        self._descriptors[descriptor.type_id] = descriptor

    def descriptor(self, type_id: str) -> FieldDescriptor:
        try:
            return self._descriptors[type_id]
        except KeyError:
            raise ValueError(f"Unknown type_id: {type_id}") from None

    @property
    def overlay_types(self) -> List[str]:
        return sorted(self._descriptors)

    def catalog(self, name: str) -> Catalog:
        with self._catalog_guard:
            catalog = self._catalogs.get(name)
        if catalog is None:
            raise RuntimeError(f"Catalog {name} has not been loaded")
        return catalog

    def has_catalog(self, name: str) -> bool:
        with self._catalog_guard:
            return name in self._catalogs

    def add_catalog(self, name: str, catalog: Catalog) -> Catalog:
        """Installs a catalog once; later calls keep the first one and return it."""
        with self._catalog_guard:
            existing = self._catalogs.get(name)
            if existing is not None:
                return existing
            self._catalogs[name] = catalog
            return catalog

    def missing_catalogs(self, query: Query) -> Tuple[str, ...]:
        """Catalogs required by matching descriptors that are not loaded yet."""
        missing: List[str] = []
        for descriptor in self._descriptors.values():
            if not descriptor.matches(query):
                continue
            for name in descriptor.catalogs:
                if name not in missing and not self.has_catalog(name):
                    missing.append(name)
        return tuple(missing)

    def instantiate(self, type_id: str, query: Query) -> Product | None:
        return self.descriptor(type_id).create(query, self)

    def resolve(self, query: Query | Mapping[str, object]) -> List[Product]:
        if not isinstance(query, Query):
            query = Query.from_attributes(query)
        products: List[Product] = []
        for descriptor in self._descriptors.values():
            if not descriptor.matches(query):
                continue
            product = descriptor.create(query, self)
            if product is not None:
                products.append(product)
        LOGGER.debug("Resolved query=%s products=%s", query, [p.type_id for p in products])
        return products


def default_registry(catalogs: Mapping[str, Catalog] | None = None) -> ProductRegistry:
    return ProductRegistry(DEFAULT_DESCRIPTORS, catalogs)
