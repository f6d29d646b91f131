from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterator, List, Mapping, Sequence, Tuple

from color_scales import Gradient, extended_sinebow_color, segmented_color_scale, sinebow_color
from field_catalog import CURRENT, Catalog, date_spec_prefix
from field_grid import (
    FieldKind,
    Grid,
    GridHeader,
    GridSource,
    Sample,
    build_grid,
    is_value,
    parse_reference_time,
    scalar_sampler,
    vector_sampler,
)
from field_loader import CancelToken, PayloadDecodeError

WEATHER_PATH = "/data/weather"
OSCAR_PATH = "/data/oscar"
OSCAR_CATALOG = "oscar"
OSCAR_CATALOG_PATH = f"{OSCAR_PATH}/catalog.json"
GFS_CYCLE_HOURS = 3
GFS_COARSE_STEPS = 8
HOUR_RE = re.compile(r"^([01]\d|2[0-3])00$")
SLUG_RE = re.compile(r"^[A-Za-z0-9_]+$")
QUERY_ALIASES = {
    "variableFamily": "param",
    "surfaceType": "surface",
    "overlaySelector": "overlay_type",
    "overlayType": "overlay_type",
}
LOGGER = logging.getLogger("earth_fields.products")

Builder = Callable[[Sequence[object]], GridSource]
Navigator = Callable[[datetime, int], "datetime | None"]


@dataclass(frozen=True)
class Query:
    param: str | None = None
    surface: str | None = None
    level: str | None = None
    overlay_type: str | None = None
    date: str = CURRENT
    hour: str | None = None

    def __post_init__(self) -> None:
        if self.date != CURRENT:
            date_spec_prefix(self.date)
        if self.hour is not None and not HOUR_RE.match(self.hour):
            raise ValueError(f"Hour must look like HH00, got {self.hour!r}")
        for name in ("param", "surface", "level", "overlay_type"):
            value = getattr(self, name)
            if value is not None and not SLUG_RE.match(value):
                raise ValueError(f"{name} must be alphanumeric, got {value!r}")

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_attributes(cls, attributes: Mapping[str, object]) -> "Query":
        known = set(cls.field_names())
        values: Dict[str, str] = {}
        for key, value in attributes.items():
            name = QUERY_ALIASES.get(key, key)
            if name not in known or value is None:
                continue
            text = str(value).strip()
            if text:
                values[name] = text
        return cls(**values)

    def matches(self, criteria: Mapping[str, str]) -> bool:
        return all(getattr(self, key) == value for key, value in criteria.items())


@dataclass(frozen=True)
class UnitConversion:
    label: str
    convert: Callable[[float], float]
    precision: int

    def display(self, raw: float) -> float:
        return round(self.convert(raw), self.precision)


@dataclass(frozen=True)
class ColorScale:
    bounds: Tuple[float, float]
    gradient: Gradient

    @property
    def domain_min(self) -> float:
        return self.bounds[0]

    @property
    def domain_max(self) -> float:
        return self.bounds[1]


@dataclass(frozen=True)
class ParticleHints:
    velocity_scale: float
    max_intensity: float


def localize(table: Mapping[str, object]) -> Callable[[str], Dict[str, str]]:
    """
    Given {"name": {"en": "Wind", "ja": "風速"}, ...} returns f(lang) giving {"name": "Wind", ...}.
    Missing languages fall back to English; plain strings are returned as-is.
    """

    def describe(lang: str) -> Dict[str, str]:
        result: Dict[str, str] = {}
        for key, value in table.items():
            if isinstance(value, Mapping):
                result[key] = value.get(lang) or value.get("en") or ""
            else:
                result[key] = value
        return result

    return describe


class LoadStatus(Enum):
    LOADED = "loaded"
    DISCARDED = "discarded"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class LoadOutcome:
    status: LoadStatus
    product: "Product | None" = None

    @property
    def loaded(self) -> bool:
        return self.status is LoadStatus.LOADED


def gfs_step(date: datetime | None, step: int) -> datetime | None:
    """Steps of ±1 move 3 hours; larger steps move a day."""
    if date is None:
        return None
    if step > 1:
        offset = GFS_COARSE_STEPS
    elif step < -1:
        offset = -GFS_COARSE_STEPS
    else:
        offset = step
    return date + timedelta(hours=offset * GFS_CYCLE_HOURS)


class Product:
    """A queryable field. Unbound until load() builds its grid."""

    def __init__(
        self,
        *,
        kind: FieldKind,
        type_id: str,
        description: Callable[[str], Dict[str, str]],
        paths: Sequence[str],
        date: datetime | None,
        builder: Builder,
        units: Sequence[UnitConversion],
        scale: ColorScale,
        navigator: Navigator = gfs_step,
        particles: ParticleHints | None = None,
    ) -> None:
        self.kind = kind
        self.type_id = type_id
        self.description = description
        self.paths: Tuple[str, ...] = tuple(paths)
        self.date = date
        self.builder = builder
        self.units: Tuple[UnitConversion, ...] = tuple(units)
        self.scale = scale
        self.particles = particles
        self._navigator = navigator
        self.grid: Grid | None = None
        self.source: str | None = None

    def __repr__(self) -> str:
        state = "bound" if self.bound else "unbound"
        return f"Product(type_id={self.type_id!r}, kind={self.kind.value}, paths={list(self.paths)!r}, {state})"

    @property
    def bound(self) -> bool:
        return self.grid is not None

    @property
    def cache_key(self) -> Tuple[str, ...]:
        return (self.type_id,) + self.paths

    def describe(self, lang: str = "en") -> Dict[str, str]:
        return self.description(lang)

    def navigate(self, step: int) -> datetime | None:
        if self.date is None:
            return None
        return self._navigator(self.date, step)

    def load(self, loader, cancel: CancelToken | None = None) -> LoadOutcome:
        if not self.paths:
            LOGGER.info("No data available type=%s date=%s", self.type_id, self.date)
            return LoadOutcome(LoadStatus.UNAVAILABLE)
        files = loader.load_all(self.paths)
        if cancel is not None and cancel.requested:
            LOGGER.debug("Discarding cancelled load type=%s paths=%s", self.type_id, list(self.paths))
            return LoadOutcome(LoadStatus.DISCARDED)
        source = self.builder(files)
        self.grid = build_grid(source.header, source.sample, source.kernel)
        self.source = self.grid.source
        self.date = self.grid.valid_time
        LOGGER.info(
            "Built grid type=%s size=%dx%d valid=%s source=%s",
            self.type_id,
            source.header.width,
            source.header.height,
            self.date.isoformat(),
            self.source,
        )
        return LoadOutcome(LoadStatus.LOADED, self)

    def interpolate(self, lon: float, lat: float) -> object | None:
        return self._require_grid().interpolate(lon, lat)

    def for_each_sample(self, callback: Callable[[float, float, Sample], object]) -> None:
        self._require_grid().for_each_sample(callback)

    def iter_samples(self, include_missing: bool = False) -> Iterator[Tuple[float, float, Sample]]:
        return self._require_grid().iter_samples(include_missing=include_missing)

    def _require_grid(self) -> Grid:
        if self.grid is None:
            raise RuntimeError(f"Product {self.type_id} has not been loaded")
        return self.grid


@dataclass(frozen=True)
class FieldDescriptor:
    """Static rule: products are created by `create` for queries matching every criterion."""

    type_id: str
    criteria: Mapping[str, str]
    create: Callable[[Query, object], "Product | None"]
    catalogs: Tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        known = set(Query.field_names())
        unknown = sorted(set(self.criteria) - known)
        if unknown:
            raise ValueError(f"Descriptor {self.type_id} uses unknown query fields: {', '.join(unknown)}")

    def matches(self, query: Query) -> bool:
        return query.matches(self.criteria)


def compose_builders(
    products: Sequence[Product],
    combine: Callable[..., object],
    header_index: int = 0,
) -> Builder:
    """
    Builder for a product derived from several constituents. Loaded payloads arrive in the order
    of the concatenated constituent paths; each constituent builds from its own slice, its kernel
    runs on its own component of the corner samples, and `combine` merges the kernel outputs.
    """
    parts = [(product.builder, len(product.paths)) for product in products]

    def builder(files: Sequence[object]) -> GridSource:
        sources: List[GridSource] = []
        start = 0
        for constituent_builder, count in parts:
            sources.append(constituent_builder(files[start : start + count]))
            start += count
        header = sources[header_index].header
        for source in sources:
            if (source.header.width, source.header.height) != (header.width, header.height):
                raise PayloadDecodeError(
                    f"Constituent grids differ in size: {source.header.width}x{source.header.height} "
                    f"vs {header.width}x{header.height}"
                )
        kernels = [source.kernel for source in sources]
        samplers = [source.sample for source in sources]

        def kernel(x: float, y: float, g00, g10, g01, g11) -> object:
            values = [k(x, y, g00[n], g10[n], g01[n], g11[n]) for n, k in enumerate(kernels)]
            return combine(*values)

        def sample(index: int) -> Tuple[Sample, ...] | None:
            values = tuple(sampler(index) for sampler in samplers)
            return values if all(is_value(v) for v in values) else None

        return GridSource(header=header, kernel=kernel, sample=sample)

    return builder


def _records(payload: object, count: int) -> List[dict]:
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list) or len(payload) < count:
        raise PayloadDecodeError(f"Expected at least {count} grid record(s)")
    return payload


def _header(raw: dict) -> GridHeader:
    try:
        return GridHeader.from_record(raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise PayloadDecodeError(f"Malformed grid header: {exc}") from exc


def scalar_record_builder(files: Sequence[object]) -> GridSource:
    record = _records(files[0], 1)[0]
    try:
        header = _header(record["header"])
        sample = scalar_sampler(record["data"], header.sample_count)
    except (KeyError, TypeError, ValueError) as exc:
        raise PayloadDecodeError(f"Malformed scalar record: {exc}") from exc
    return GridSource(header=header, kernel=FieldKind.SCALAR.kernel, sample=sample)


def vector_record_builder(files: Sequence[object]) -> GridSource:
    records = _records(files[0], 2)
    try:
        header = _header(records[0]["header"])
        sample = vector_sampler(records[0]["data"], records[1]["data"], header.sample_count)
    except (KeyError, TypeError, ValueError) as exc:
        raise PayloadDecodeError(f"Malformed vector records: {exc}") from exc
    return GridSource(header=header, kernel=FieldKind.VECTOR.kernel, sample=sample)


def netcdf_header(variables: Mapping[str, dict], center: object) -> GridHeader:
    lon = variables["lon"]["sequence"]
    lat = variables["lat"]["sequence"]
    return GridHeader(
        origin_lon=float(lon["start"]),
        origin_lat=float(lat["start"]),
        delta_lon=float(lon["delta"]),
        delta_lat=-float(lat["delta"]),
        width=int(lon["size"]),
        height=int(lat["size"]),
        reference_time=parse_reference_time(variables["time"]["data"][0]),
        forecast_offset_hours=0,
        center_name=center if isinstance(center, str) else None,
        center=None if isinstance(center, str) else center,
    )


def netcdf_scalar_builder(variable: str) -> Builder:
    def builder(files: Sequence[object]) -> GridSource:
        payload = files[0]
        try:
            variables = payload["variables"]
            header = netcdf_header(variables, payload.get("Originating_or_generating_Center"))
            sample = scalar_sampler(variables[variable]["data"], header.sample_count)
        except (KeyError, TypeError, IndexError, ValueError) as exc:
            raise PayloadDecodeError(f"Malformed NetCDF payload for {variable}: {exc}") from exc
        return GridSource(header=header, kernel=FieldKind.SCALAR.kernel, sample=sample)

    return builder


def gfs_path(query: Query, type_id: str, surface: str | None = None, level: str | None = None) -> str:
    directory = query.date
    stamp = CURRENT if directory == CURRENT else (query.hour or "0000")
    parts = [stamp, type_id, surface, level, "gfs", "1.0"]
    name = "-".join(part for part in parts if part is not None) + ".json"
    return "/".join([WEATHER_PATH, directory, name])


def gfs_date(query: Query, now: datetime | None = None) -> datetime:
    if query.date == CURRENT:
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        return now.replace(hour=now.hour // GFS_CYCLE_HOURS * GFS_CYCLE_HOURS, minute=0, second=0, microsecond=0)
    year, month, day = query.date.split("/")
    hour = int((query.hour or "0000")[:2])
    return datetime(int(year), int(month), int(day), hour, tzinfo=timezone.utc)


def describe_surface(query: Query, lang: str) -> str:
    if query.surface == "surface":
        return "地上" if lang == "ja" else "Surface"
    level = query.level or ""
    return level[:1].upper() + level[1:]


def surface_qualifier(query: Query) -> Dict[str, str]:
    return {lang: " @ " + describe_surface(query, lang) for lang in ("en", "ja")}


WIND_UNITS = (
    UnitConversion("km/h", lambda x: x * 3.6, 0),
    UnitConversion("m/s", lambda x: x, 1),
    UnitConversion("kn", lambda x: x * 1.943844, 0),
    UnitConversion("mph", lambda x: x * 2.236936, 0),
)
CURRENT_UNITS = (
    UnitConversion("m/s", lambda x: x, 2),
    UnitConversion("km/h", lambda x: x * 3.6, 1),
    UnitConversion("kn", lambda x: x * 1.943844, 1),
    UnitConversion("mph", lambda x: x * 2.236936, 1),
)
TEMP_UNITS = (
    UnitConversion("°C", lambda x: x - 273.15, 1),
    UnitConversion("°F", lambda x: x * 9 / 5 - 459.67, 1),
    UnitConversion("K", lambda x: x, 1),
)
PRESSURE_UNITS = (
    UnitConversion("hPa", lambda x: x / 100, 0),
    UnitConversion("mmHg", lambda x: x / 133.322387415, 0),
    UnitConversion("inHg", lambda x: x / 3386.389, 1),
)
WATER_UNITS = (UnitConversion("kg/m²", lambda x: x, 3),)

WIND_SCALE = ColorScale((0, 100), lambda v, a: extended_sinebow_color(min(v, 100) / 100, a))
TEMP_SCALE = ColorScale(
    (193, 328),
    segmented_color_scale(
        [
            (193, (37, 4, 42)),
            (206, (41, 10, 130)),
            (219, (81, 40, 40)),
            (233.15, (192, 37, 149)),  # -40 C/F
            (255.372, (70, 215, 215)),  # 0 F
            (273.15, (21, 84, 187)),  # 0 C
            (275.15, (24, 132, 14)),  # just above 0 C
            (291, (247, 251, 59)),
            (298, (235, 167, 21)),
            (311, (230, 71, 39)),
            (328, (88, 27, 67)),
        ]
    ),
)
HUMIDITY_SCALE = ColorScale(
    (0, 100),
    segmented_color_scale(
        [
            (0, (230, 165, 30)),
            (17, (120, 100, 95)),
            (34, (40, 44, 92)),
            (52, (21, 13, 193)),
            (68, (75, 63, 235)),
            (85, (25, 255, 255)),
            (100, (150, 255, 255)),
        ]
    ),
)
AIR_DENSITY_SCALE = ColorScale((0, 1.5), lambda v, a: sinebow_color(min(v, 1.5) / 1.5, a))
WIND_POWER_SCALE = ColorScale(
    (0, 80000),
    segmented_color_scale(
        [
            (0, (15, 4, 96)),
            (250, (30, 8, 180)),
            (1000, (121, 102, 2)),
            (2000, (118, 161, 66)),
            (4000, (50, 102, 219)),
            (8000, (19, 131, 193)),
            (16000, (59, 204, 227)),
            (64000, (241, 1, 45)),
            (80000, (243, 0, 241)),
        ]
    ),
)
CLOUD_WATER_SCALE = ColorScale(
    (0, 1),
    segmented_color_scale([(0.0, (5, 5, 89)), (0.2, (170, 170, 230)), (1.0, (255, 255, 255))]),
)
PRECIPITABLE_WATER_SCALE = ColorScale(
    (0, 70),
    segmented_color_scale(
        [
            (0, (230, 165, 30)),
            (10, (120, 100, 95)),
            (20, (40, 44, 92)),
            (30, (21, 13, 193)),
            (40, (75, 63, 235)),
            (60, (25, 255, 255)),
            (70, (150, 255, 255)),
        ]
    ),
)
# Viridis sampled every 1000 Pa.
PRESSURE_SCALE = ColorScale(
    (95000, 105000),
    segmented_color_scale(
        [
            (95000, (255 * 0.267004, 255 * 0.004874, 255 * 0.329415)),
            (96000, (255 * 0.282290, 255 * 0.145912, 255 * 0.461510)),
            (97000, (255 * 0.253935, 255 * 0.265254, 255 * 0.529983)),
            (98000, (255 * 0.204903, 255 * 0.375746, 255 * 0.553533)),
            (99000, (255 * 0.163625, 255 * 0.471133, 255 * 0.558148)),
            (100000, (255 * 0.127568, 255 * 0.566949, 255 * 0.550556)),
            (101000, (255 * 0.134692, 255 * 0.658636, 255 * 0.517649)),
            (102000, (255 * 0.266941, 255 * 0.748751, 255 * 0.440573)),
            (103000, (255 * 0.477504, 255 * 0.821444, 255 * 0.318195)),
            (104000, (255 * 0.741388, 255 * 0.873449, 255 * 0.149561)),
            (105000, (255 * 0.993248, 255 * 0.906157, 255 * 0.143936)),
        ]
    ),
)
CURRENTS_SCALE = ColorScale(
    (0, 1.5),
    segmented_color_scale(
        [
            (0, (10, 25, 68)),
            (0.15, (10, 25, 250)),
            (0.4, (24, 255, 93)),
            (0.65, (255, 233, 102)),
            (1.0, (255, 233, 15)),
            (1.5, (255, 15, 15)),
        ]
    ),
)


def _weather_scalar(
    query: Query,
    type_id: str,
    name: Mapping[str, str],
    units: Sequence[UnitConversion],
    scale: ColorScale,
    on_surface: bool = True,
    builder: Builder = scalar_record_builder,
) -> Product:
    if on_surface:
        path = gfs_path(query, type_id, query.surface, query.level)
        qualifier: Mapping[str, str] | str = surface_qualifier(query)
    else:
        path = gfs_path(query, type_id)
        qualifier = ""
    return Product(
        kind=FieldKind.SCALAR,
        type_id=type_id,
        description=localize({"name": name, "qualifier": qualifier}),
        paths=[path],
        date=gfs_date(query),
        builder=builder,
        units=units,
        scale=scale,
    )


def create_wind(query: Query, registry: object = None) -> Product:
    return Product(
        kind=FieldKind.VECTOR,
        type_id="wind",
        description=localize({"name": {"en": "Wind", "ja": "風速"}, "qualifier": surface_qualifier(query)}),
        paths=[gfs_path(query, "wind", query.surface, query.level)],
        date=gfs_date(query),
        builder=vector_record_builder,
        units=WIND_UNITS,
        scale=WIND_SCALE,
        particles=ParticleHints(velocity_scale=1 / 60000, max_intensity=17),
    )


def create_temp(query: Query, registry: object = None) -> Product:
    return _weather_scalar(query, "temp", {"en": "Temp", "ja": "気温"}, TEMP_UNITS, TEMP_SCALE)


def create_relative_humidity(query: Query, registry: object = None) -> Product:
    return _weather_scalar(
        query,
        "relative_humidity",
        {"en": "Relative Humidity", "ja": "相対湿度"},
        (UnitConversion("%", lambda x: x, 0),),
        HUMIDITY_SCALE,
    )


def create_air_density(query: Query, registry: object = None) -> Product:
    return _weather_scalar(
        query,
        "air_density",
        {"en": "Air Density", "ja": "空気密度"},
        (UnitConversion("kg/m³", lambda x: x, 2),),
        AIR_DENSITY_SCALE,
        builder=netcdf_scalar_builder("air_density"),
    )


def wind_power(wind: Tuple[float, float, float], density: float) -> float:
    speed = wind[2]
    return 0.5 * density * speed * speed * speed


def create_wind_power_density(query: Query, registry) -> Product:
    wind = registry.instantiate("wind", query)
    density = registry.instantiate("air_density", query)
    return Product(
        kind=FieldKind.SCALAR,
        type_id="wind_power_density",
        description=localize(
            {"name": {"en": "Wind Power Density", "ja": "風力エネルギー密度"}, "qualifier": surface_qualifier(query)}
        ),
        paths=list(wind.paths) + list(density.paths),
        date=gfs_date(query),
        builder=compose_builders([wind, density], wind_power, header_index=1),
        units=(
            UnitConversion("kW/m²", lambda x: x / 1000, 1),
            UnitConversion("W/m²", lambda x: x, 0),
        ),
        scale=WIND_POWER_SCALE,
    )


def create_total_cloud_water(query: Query, registry: object = None) -> Product:
    return _weather_scalar(
        query, "total_cloud_water", {"en": "Total Cloud Water", "ja": "雲水量"}, WATER_UNITS, CLOUD_WATER_SCALE, False
    )


def create_total_precipitable_water(query: Query, registry: object = None) -> Product:
    return _weather_scalar(
        query,
        "total_precipitable_water",
        {"en": "Total Precipitable Water", "ja": "可降水量"},
        WATER_UNITS,
        PRECIPITABLE_WATER_SCALE,
        False,
    )


def create_mean_sea_level_pressure(query: Query, registry: object = None) -> Product:
    return _weather_scalar(
        query,
        "mean_sea_level_pressure",
        {"en": "Mean Sea Level Pressure", "ja": "海面更正気圧"},
        PRESSURE_UNITS,
        PRESSURE_SCALE,
        False,
    )


def oscar_path(catalog: Catalog, query: Query) -> str | None:
    entry = catalog.lookup(query.date)
    return f"{OSCAR_PATH}/{entry}" if entry else None


def create_currents(query: Query, registry) -> Product:
    catalog: Catalog = registry.catalog(OSCAR_CATALOG)
    path = oscar_path(catalog, query)
    if path is None:
        LOGGER.info("OSCAR catalog has no entry for date=%s", query.date)
    return Product(
        kind=FieldKind.VECTOR,
        type_id="currents",
        description=localize(
            {"name": {"en": "Ocean Currents", "ja": "海流"}, "qualifier": {"en": " @ Surface", "ja": " @ 地上"}}
        ),
        paths=[path] if path else [],
        date=catalog.date_for(query.date),
        builder=vector_record_builder,
        navigator=lambda date, step: catalog.step(date, step),
        units=CURRENT_UNITS,
        scale=CURRENTS_SCALE,
        particles=ParticleHints(velocity_scale=1 / 4400, max_intensity=0.7),
    )


def create_off(query: Query, registry: object = None) -> None:
    return None


def _overlay(type_id: str, create: Callable[[Query, object], "Product | None"]) -> FieldDescriptor:
    return FieldDescriptor(type_id, {"param": "wind", "overlay_type": type_id}, create)


DEFAULT_DESCRIPTORS: Tuple[FieldDescriptor, ...] = (
    FieldDescriptor("wind", {"param": "wind"}, create_wind),
    _overlay("temp", create_temp),
    _overlay("relative_humidity", create_relative_humidity),
    _overlay("air_density", create_air_density),
    _overlay("wind_power_density", create_wind_power_density),
    _overlay("total_cloud_water", create_total_cloud_water),
    _overlay("total_precipitable_water", create_total_precipitable_water),
    _overlay("mean_sea_level_pressure", create_mean_sea_level_pressure),
    FieldDescriptor(
        "currents",
        {"param": "ocean", "surface": "surface", "level": "currents"},
        create_currents,
        catalogs=(OSCAR_CATALOG,),
    ),
    FieldDescriptor("off", {"overlay_type": "off"}, create_off),
)
