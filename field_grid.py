from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterator, List, Sequence, Tuple

import numpy as np

Sample = object
SampleAccessor = Callable[[int], Sample]
Kernel = Callable[[float, float, Sample, Sample, Sample, Sample], object]

OSCAR_CENTER = -3
NCEP_CENTER = 7
NCEP_CENTER_NAME = "US National Weather Service, National Centres for Environmental Prediction (NCEP)"
SOURCE_LABELS = {
    OSCAR_CENTER: "OSCAR / Earth & Space Research",
    NCEP_CENTER: "GFS / NCEP / US National Weather Service",
    NCEP_CENTER_NAME: "GFS / NCEP / US National Weather Service",
}


def floor_mod(a: float, n: float) -> float:
    """Modulo with the sign of the divisor, so results land in [0, n) for n > 0."""
    return a - n * math.floor(a / n)


def is_value(sample: Sample) -> bool:
    if sample is None:
        return False
    if isinstance(sample, float) and math.isnan(sample):
        return False
    return True


def parse_reference_time(value: object) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch milliseconds
        parsed = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported reference time: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class GridHeader:
    origin_lon: float
    origin_lat: float
    delta_lon: float
    delta_lat: float
    width: int
    height: int
    reference_time: datetime
    forecast_offset_hours: int = 0
    center: int | str | None = None
    center_name: str | None = None

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Grid dimensions must be positive, got {self.width}x{self.height}")
        if self.delta_lon == 0 or self.delta_lat == 0:
            raise ValueError(f"Grid spacing must be non-zero, got dx={self.delta_lon} dy={self.delta_lat}")

    @classmethod
    def from_record(cls, header: dict) -> "GridHeader":
        """Reads a GRIB-to-JSON style header (lo1, la1, dx, dy, nx, ny, refTime, forecastTime)."""
        return cls(
            origin_lon=float(header["lo1"]),
            origin_lat=float(header["la1"]),
            delta_lon=float(header["dx"]),
            delta_lat=float(header["dy"]),
            width=int(header["nx"]),
            height=int(header["ny"]),
            reference_time=parse_reference_time(header["refTime"]),
            forecast_offset_hours=int(header.get("forecastTime") or 0),
            center=header.get("center"),
            center_name=header.get("centerName"),
        )

    @property
    def valid_time(self) -> datetime:
        return self.reference_time + timedelta(hours=self.forecast_offset_hours)

    @property
    def sample_count(self) -> int:
        return self.width * self.height

    @property
    def is_wrapped(self) -> bool:
        return math.floor(self.width * abs(self.delta_lon)) >= 360


def data_source(header: GridHeader) -> str | None:
    code = header.center or header.center_name
    return SOURCE_LABELS.get(code, header.center_name)


class FieldKind(Enum):
    SCALAR = "scalar"
    VECTOR = "vector"

    @property
    def kernel(self) -> Kernel:
        if self is FieldKind.VECTOR:
            return bilinear_interpolate_vector
        return bilinear_interpolate_scalar


def bilinear_interpolate_scalar(x: float, y: float, g00: float, g10: float, g01: float, g11: float) -> float:
    rx = 1 - x
    ry = 1 - y
    return g00 * rx * ry + g10 * x * ry + g01 * rx * y + g11 * x * y


def bilinear_interpolate_vector(
    x: float, y: float, g00: Sequence[float], g10: Sequence[float], g01: Sequence[float], g11: Sequence[float]
) -> Tuple[float, float, float]:
    rx = 1 - x
    ry = 1 - y
    a = rx * ry
    b = x * ry
    c = rx * y
    d = x * y
    u = g00[0] * a + g10[0] * b + g01[0] * c + g11[0] * d
    v = g00[1] * a + g10[1] * b + g01[1] * c + g11[1] * d
    return u, v, math.sqrt(u * u + v * v)


def _sample_values(data: Sequence[float] | np.ndarray, size: int | None) -> np.ndarray:
    values = np.asarray(data, dtype=np.float64).ravel()
    if size is not None and values.size != size:
        raise ValueError(f"Expected {size} samples, got {values.size}")
    return values


def scalar_sampler(data: Sequence[float] | np.ndarray, size: int | None = None) -> SampleAccessor:
    values = _sample_values(data, size)

    def sample(index: int) -> float | None:
        value = float(values[index])
        return value if is_value(value) else None

    return sample


def vector_sampler(
    u_data: Sequence[float] | np.ndarray,
    v_data: Sequence[float] | np.ndarray,
    size: int | None = None,
) -> SampleAccessor:
    u_values = _sample_values(u_data, size)
    v_values = _sample_values(v_data, size)
    if u_values.shape != v_values.shape:
        raise ValueError(f"Vector component shape mismatch: u={u_values.shape} v={v_values.shape}")

    def sample(index: int) -> Tuple[float, float] | None:
        u = float(u_values[index])
        v = float(v_values[index])
        return (u, v) if is_value(u) and is_value(v) else None

    return sample


@dataclass(frozen=True)
class GridSource:
    """What a product builder hands to build_grid."""

    header: GridHeader
    kernel: Kernel
    sample: SampleAccessor


class Grid:
    """Immutable row-major sample buffer with bilinear lookup."""

    def __init__(self, header: GridHeader, rows: List[List[Sample]], kernel: Kernel) -> None:
        self._header = header
        self._rows = rows
        self._kernel = kernel
        self._lon_sign = 1.0 if header.delta_lon > 0 else -1.0
        self._abs_delta_lon = abs(header.delta_lon)

    @property
    def header(self) -> GridHeader:
        return self._header

    @property
    def valid_time(self) -> datetime:
        return self._header.valid_time

    @property
    def source(self) -> str | None:
        return data_source(self._header)

    def sample_at(self, row: int, column: int) -> Sample:
        if row < 0 or row >= len(self._rows):
            return None
        values = self._rows[row]
        if column < 0 or column >= len(values):
            return None
        return values[column]

    def interpolate(self, lon: float, lat: float) -> object | None:
        if not (math.isfinite(lon) and math.isfinite(lat)):
            return None
        header = self._header
        # Fractional column in the wrapped range [0, 360), honoring the sign of dx.
        i = floor_mod((lon - header.origin_lon) * self._lon_sign, 360.0) / self._abs_delta_lon
        j = (header.origin_lat - lat) / header.delta_lat

        fi = math.floor(i)
        ci = fi + 1
        fj = math.floor(j)
        cj = fj + 1

        g00 = self.sample_at(fj, fi)
        g10 = self.sample_at(fj, ci)
        if not (is_value(g00) and is_value(g10)):
            return None
        g01 = self.sample_at(cj, fi)
        g11 = self.sample_at(cj, ci)
        if not (is_value(g01) and is_value(g11)):
            return None
        return self._kernel(i - fi, j - fj, g00, g10, g01, g11)

    def sample_value(self, sample: Sample) -> object:
        """The kernel's value exactly at a grid point holding sample."""
        return self._kernel(0.0, 0.0, sample, sample, sample, sample)

    def coordinates(self, row: int, column: int) -> Tuple[float, float]:
        header = self._header
        lon = floor_mod(180.0 + header.origin_lon + column * header.delta_lon, 360.0) - 180.0
        lat = header.origin_lat - row * header.delta_lat
        return lon, lat

    def iter_samples(self, include_missing: bool = False) -> Iterator[Tuple[float, float, Sample]]:
        """Yields (lon, lat, sample) in row-major order; the wrap column is never visited."""
        for j in range(self._header.height):
            row = self._rows[j]
            for i in range(self._header.width):
                sample = row[i]
                if not include_missing and not is_value(sample):
                    continue
                lon, lat = self.coordinates(j, i)
                yield lon, lat, sample

    def for_each_sample(self, callback: Callable[[float, float, Sample], object]) -> None:
        for lon, lat, sample in self.iter_samples(include_missing=True):
            callback(lon, lat, sample)


def build_grid(header: GridHeader, sample: SampleAccessor, kernel: Kernel) -> Grid:
    width = header.width
    wrapped = header.is_wrapped
    rows: List[List[Sample]] = []
    p = 0
    for _ in range(header.height):
        row = [sample(index) for index in range(p, p + width)]
        p += width
        if wrapped:
            # Repeat the first column so the ceiling index at the seam stays in range.
            row.append(row[0])
        rows.append(row)
    return Grid(header, rows, kernel)
