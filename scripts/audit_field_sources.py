#!/usr/bin/env python3
from __future__ import annotations

import json
import os
from typing import Dict, List

from field_loader import PayloadLoadError
from field_store import ProductStore

LAYER = {"param": "wind", "surface": "surface", "level": "level"}
OCEAN_LAYER = {"param": "ocean", "surface": "surface", "level": "currents"}


def _queries(store: ProductStore, date: str, hour: str | None) -> List[Dict[str, object]]:
    base = {"date": date}
    if hour and date != "current":
        base["hour"] = hour
    queries = [dict(LAYER, **base)]
    for type_id in store.registry.overlay_types:
        if type_id in ("wind", "currents", "off"):
            continue
        queries.append(dict(LAYER, overlay_type=type_id, **base))
    queries.append(dict(OCEAN_LAYER, date=date))
    return queries


def audit_rows(store: ProductStore, date: str = "current", hour: str | None = None) -> List[Dict[str, object]]:
    rows: List[Dict[str, object]] = []
    seen = set()
    for query in _queries(store, date, hour):
        try:
            products = store.products(query)
        except (ValueError, RuntimeError) as exc:
            rows.append({"query": query, "status": "unresolved", "error": f"{type(exc).__name__}: {exc}"})
            continue
        for product in products:
            if product.cache_key in seen:
                continue
            seen.add(product.cache_key)
            if not product.paths:
                rows.append({"type_id": product.type_id, "query": query, "status": "missing", "paths": []})
                continue
            details = []
            ok = True
            for path in product.paths:
                try:
                    store.loader.load_payload(path)
                    details.append({"path": path, "error": ""})
                except PayloadLoadError as exc:
                    ok = False
                    details.append({"path": path, "error": f"{type(exc).__name__}: {exc}"})
            rows.append(
                {
                    "type_id": product.type_id,
                    "query": query,
                    "status": "ok" if ok else "missing",
                    "detail": details,
                }
            )
    return rows


def main() -> None:
    store = ProductStore()
    try:
        rows = audit_rows(store, os.getenv("AUDIT_DATE", "current"), os.getenv("AUDIT_HOUR") or None)
    finally:
        store.close()

    missing = [r for r in rows if r.get("status") != "ok"]
    print(f"total={len(rows)} missing={len(missing)}")
    for row in missing:
        print(json.dumps(row, ensure_ascii=False))


if __name__ == "__main__":
    main()
