import os
import unittest
from unittest.mock import patch

try:
    import app as app_module
    from field_loader import PayloadRequestError
    from field_registry import default_registry
    from field_store import ProductStore
except ModuleNotFoundError:
    app_module = None
    PayloadRequestError = None
    default_registry = None
    ProductStore = None


_WIND_PATH = "/data/weather/2014/01/31/0300-wind-surface-level-gfs-1.0.json"
_TEMP_PATH = "/data/weather/2014/01/31/0300-temp-surface-level-gfs-1.0.json"
_CATALOG_PATH = "/data/oscar/catalog.json"
_QUERY = {"param": "wind", "surface": "surface", "level": "level", "date": "2014/01/31", "hour": "0300"}


def _header():
    return {
        "lo1": 0,
        "la1": 1,
        "dx": 1,
        "dy": 1,
        "nx": 2,
        "ny": 2,
        "refTime": "2014-01-31T00:00:00Z",
        "forecastTime": 3,
        "center": 7,
    }


class _MemoryLoader:
    def __init__(self, payloads):
        self.payloads = payloads

    def load_payload(self, path):
        if path not in self.payloads:
            raise PayloadRequestError(f"missing {path}")
        return self.payloads[path]

    def load_all(self, paths):
        return [self.load_payload(path) for path in paths]

    def close(self):
        return None


def _store(payloads=None):
    if payloads is None:
        payloads = {
            _WIND_PATH: [
                {"header": _header(), "data": [3, 3, 3, 3]},
                {"header": _header(), "data": [4, 4, 4, 4]},
            ],
            _TEMP_PATH: [{"header": _header(), "data": [280.0, 290.0, 300.0, 310.0]}],
            _CATALOG_PATH: ["20140106-surface-currents-oscar-0.33.json"],
        }
    return ProductStore(registry=default_registry(), loader=_MemoryLoader(payloads))


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def test_health(self):
        self.assertEqual(app_module.health(), {"status": "ok"})

    def test_overlay_types_lists_registry(self):
        with patch.object(app_module, "store", _store()):
            payload = app_module.overlay_types()
        self.assertIn("wind_power_density", payload["overlay_types"])
        self.assertEqual(payload["overlay_types"], sorted(payload["overlay_types"]))

    def test_products_describe_resolved_fields(self):
        with patch.object(app_module, "store", _store()):
            payload = app_module.products(overlay_type="temp", lang="ja", **_QUERY)
        wind, temp = payload["products"]
        self.assertEqual(wind["kind"], "vector")
        self.assertEqual(wind["paths"], [_WIND_PATH])
        self.assertEqual(wind["particles"], {"velocity_scale": 1 / 60000, "max_intensity": 17})
        self.assertEqual(wind["description"]["name"], "風速")
        self.assertEqual(temp["scale"], {"min": 193, "max": 328})
        self.assertEqual([u["label"] for u in temp["units"]], ["°C", "°F", "K"])
        self.assertEqual(wind["date"], "2014-01-31T03:00:00+00:00")

    def test_products_rejects_invalid_date(self):
        with patch.object(app_module, "store", _store()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.products(param="wind", date="31/01/2014")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_products_rejects_path_like_surface(self):
        with patch.object(app_module, "store", _store()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.products(param="wind", surface="..", level="level")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_value_reports_vector_and_scalar_samples(self):
        with patch.object(app_module, "store", _store()):
            payload = app_module.value(lat=0.5, lon=0.5, overlay_type="temp", **_QUERY)
        wind, temp = payload["values"]
        self.assertEqual(wind["value"], {"u": 3.0, "v": 4.0, "magnitude": 5.0})
        self.assertEqual(wind["display"][0], {"unit": "km/h", "value": 18.0})
        self.assertEqual(wind["source"], "GFS / NCEP / US National Weather Service")
        self.assertEqual(temp["value"], 295.0)
        self.assertEqual(temp["display"][0], {"unit": "°C", "value": 21.9})

    def test_value_outside_grid_is_null(self):
        with patch.object(app_module, "store", _store()):
            payload = app_module.value(lat=0.5, lon=1.5, **_QUERY)
        (wind,) = payload["values"]
        self.assertIsNone(wind["value"])
        self.assertEqual([d["value"] for d in wind["display"]], [None, None, None, None])

    def test_value_at_grid_point_converts_units(self):
        with patch.object(app_module, "store", _store()):
            payload = app_module.value(lat=1.0, lon=0.0, overlay_type="temp", **_QUERY)
        temp = payload["values"][1]
        self.assertEqual(temp["value"], 280.0)
        self.assertEqual(temp["display"], [
            {"unit": "°C", "value": 6.9},
            {"unit": "°F", "value": 44.3},
            {"unit": "K", "value": 280.0},
        ])

    def test_value_returns_404_when_nothing_matches(self):
        with patch.object(app_module, "store", _store()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.value(lat=0.0, lon=0.0, param="chemistry")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_value_returns_503_when_payload_missing(self):
        with patch.object(app_module, "store", _store({})):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.value(lat=0.0, lon=0.0, **_QUERY)
        self.assertEqual(ctx.exception.status_code, 503)

    def test_value_returns_503_when_grid_data_is_short(self):
        payloads = {
            _WIND_PATH: [
                {"header": _header(), "data": [3, 3, 3, 3]},
                {"header": _header(), "data": [4, 4, 4, 4]},
            ],
            _TEMP_PATH: [{"header": _header(), "data": [280.0, 290.0, 300.0]}],
        }
        with patch.object(app_module, "store", _store(payloads)):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.value(lat=0.5, lon=0.5, overlay_type="temp", **_QUERY)
        self.assertEqual(ctx.exception.status_code, 503)

    def test_value_reports_unavailable_currents_as_null(self):
        with patch.object(app_module, "store", _store()):
            payload = app_module.value(
                lat=0.0, lon=0.0, param="ocean", surface="surface", level="currents", date="2013/01/01"
            )
        self.assertEqual(payload["values"], [{"type_id": "currents", "kind": "vector", "value": None}])

    def test_navigate_steps_weather_by_cycle(self):
        with patch.object(app_module, "store", _store()):
            payload = app_module.navigate(type_id="wind", step=-2, **_QUERY)
        self.assertEqual(payload["date"], "2014-01-30T03:00:00+00:00")

    def test_navigate_past_catalog_end_is_404(self):
        with patch.object(app_module, "store", _store()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.navigate(type_id="currents", step=1, param="ocean", surface="surface", level="currents")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_navigate_unknown_type_is_400(self):
        with patch.object(app_module, "store", _store()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.navigate(type_id="snow_depth", step=1, **_QUERY)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_range_reports_min_and_max(self):
        with patch.object(app_module, "store", _store()):
            payload = app_module.value_range(type_id="temp", overlay_type="temp", **_QUERY)
        self.assertEqual(payload, {"type_id": "temp", "min": 280.0, "max": 310.0})

    def test_cors_defaults_to_local_server_origins(self):
        with patch.dict(os.environ, {"CORS_ALLOW_ORIGINS": "", "EARTH_ALLOW_ALL_CORS": ""}):
            origins = app_module._allowed_cors_origins()
        self.assertEqual(origins, ["http://127.0.0.1:8000", "http://localhost:8000"])

    def test_cors_origins_read_from_environment(self):
        env = {"CORS_ALLOW_ORIGINS": "https://earth.example, http://localhost:3000,", "EARTH_ALLOW_ALL_CORS": ""}
        with patch.dict(os.environ, env):
            self.assertEqual(
                app_module._allowed_cors_origins(), ["https://earth.example", "http://localhost:3000"]
            )
        with patch.dict(os.environ, {"EARTH_ALLOW_ALL_CORS": "1"}):
            self.assertEqual(app_module._allowed_cors_origins(), ["*"])


if __name__ == "__main__":
    unittest.main()
