from __future__ import annotations

import logging
import math
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from field_grid import FieldKind
from field_loader import PayloadLoadError
from field_products import LoadStatus, Product
from field_store import ProductStore


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", os.getenv("EARTH_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("earth_fields")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("EARTH_LOG_FILE", "logs/earth_fields.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="Earth Fields")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("EARTH_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

store = ProductStore()


def _plain(value: object) -> object:
    # Endpoint functions called directly still see the Query(...) marker as the default.
    if value is None or isinstance(value, (str, int, float)):
        return value
    return getattr(value, "default", value)


def _attributes(
    param: str | None,
    surface: str | None,
    level: str | None,
    overlay_type: str | None,
    date: str | None,
    hour: str | None,
) -> Dict[str, object]:
    raw = {
        "param": param,
        "surface": surface,
        "level": level,
        "overlay_type": overlay_type,
        "date": date,
        "hour": hour,
    }
    out: Dict[str, object] = {}
    for key, value in raw.items():
        value = _plain(value)
        if value is not None and str(value).strip():
            out[key] = str(value).strip()
    return out


def _product_payload(product: Product, lang: str) -> Dict[str, object]:
    particles = None
    if product.particles is not None:
        particles = {
            "velocity_scale": product.particles.velocity_scale,
            "max_intensity": product.particles.max_intensity,
        }
    return {
        "type_id": product.type_id,
        "kind": product.kind.value,
        "description": product.describe(lang),
        "date": product.date.isoformat() if product.date else None,
        "paths": list(product.paths),
        "source": product.source,
        "units": [{"label": unit.label, "precision": unit.precision} for unit in product.units],
        "scale": {"min": product.scale.domain_min, "max": product.scale.domain_max},
        "particles": particles,
    }


def _display_values(product: Product, raw: float | None) -> List[Dict[str, object]]:
    out: List[Dict[str, object]] = []
    for unit in product.units:
        value = None
        if raw is not None and math.isfinite(raw):
            value = unit.display(raw)
        out.append({"unit": unit.label, "value": value})
    return out


def _value_payload(product: Product, lat: float, lon: float) -> Dict[str, object]:
    sample = product.interpolate(lon, lat)
    payload: Dict[str, object] = {
        "type_id": product.type_id,
        "kind": product.kind.value,
        "date": product.date.isoformat() if product.date else None,
        "source": product.source,
    }
    if sample is None:
        payload["value"] = None
        payload["display"] = _display_values(product, None)
        return payload
    if product.kind is FieldKind.VECTOR:
        u, v, magnitude = sample
        payload["value"] = {"u": round(u, 3), "v": round(v, 3), "magnitude": round(magnitude, 3)}
        payload["display"] = _display_values(product, magnitude)
    else:
        payload["value"] = round(float(sample), 3)
        payload["display"] = _display_values(product, float(sample))
    return payload


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    store.close()


@app.get("/api/overlay-types")
def overlay_types() -> Dict[str, object]:
    return {"overlay_types": store.registry.overlay_types}


@app.get("/api/products")
def products(
    param: str | None = Query(None),
    surface: str | None = Query(None),
    level: str | None = Query(None),
    overlay_type: str | None = Query(None),
    date: str | None = Query(None),
    hour: str | None = Query(None),
    lang: str = Query("en"),
) -> Dict[str, object]:
    attributes = _attributes(param, surface, level, overlay_type, date, hour)
    try:
        resolved = store.products(attributes)
    except ValueError as exc:
        LOGGER.warning("Products request invalid: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        LOGGER.warning("Products request runtime error: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {
        "query": attributes,
        "products": [_product_payload(product, str(_plain(lang) or "en")) for product in resolved],
    }


@app.get("/api/value")
def value(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    param: str | None = Query(None),
    surface: str | None = Query(None),
    level: str | None = Query(None),
    overlay_type: str | None = Query(None),
    date: str | None = Query(None),
    hour: str | None = Query(None),
) -> Dict[str, object]:
    attributes = _attributes(param, surface, level, overlay_type, date, hour)
    results: List[Dict[str, object]] = []
    try:
        resolved = store.products(attributes)
        if not resolved:
            raise HTTPException(status_code=404, detail="No products match the query")
        for product in resolved:
            outcome = store.load(product)
            if outcome.status is LoadStatus.UNAVAILABLE:
                results.append({"type_id": product.type_id, "kind": product.kind.value, "value": None})
                continue
            results.append(_value_payload(outcome.product, lat, lon))
    except ValueError as exc:
        LOGGER.warning("Value request invalid: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PayloadLoadError as exc:
        LOGGER.warning("Value request load failure: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except RuntimeError as exc:
        LOGGER.warning("Value request runtime error: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return {"query": attributes, "lat": lat, "lon": lon, "values": results}


@app.get("/api/navigate")
def navigate(
    type_id: str = Query(...),
    step: int = Query(1),
    param: str | None = Query(None),
    surface: str | None = Query(None),
    level: str | None = Query(None),
    overlay_type: str | None = Query(None),
    date: str | None = Query(None),
    hour: str | None = Query(None),
) -> Dict[str, object]:
    attributes = _attributes(param, surface, level, overlay_type, date, hour)
    step = int(_plain(step))
    try:
        target = store.navigate(attributes, type_id, step)
    except ValueError as exc:
        LOGGER.warning("Navigate request invalid: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        LOGGER.warning("Navigate request runtime error: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if target is None:
        raise HTTPException(status_code=404, detail=f"No {type_id} data {step:+d} step(s) from the requested date")
    return {"type_id": type_id, "step": step, "date": target.isoformat()}


@app.get("/api/range")
def value_range(
    type_id: str = Query(...),
    param: str | None = Query(None),
    surface: str | None = Query(None),
    level: str | None = Query(None),
    overlay_type: str | None = Query(None),
    date: str | None = Query(None),
    hour: str | None = Query(None),
) -> Dict[str, object]:
    attributes = _attributes(param, surface, level, overlay_type, date, hour)
    try:
        bounds = store.value_range(attributes, type_id)
    except ValueError as exc:
        LOGGER.warning("Range request invalid: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        LOGGER.warning("Range request runtime error: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if bounds is None:
        raise HTTPException(status_code=404, detail=f"No {type_id} data for the requested date")
    return {"type_id": type_id, "min": bounds[0], "max": bounds[1]}


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
