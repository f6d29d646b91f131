from __future__ import annotations

import math
from typing import Callable, Sequence, Tuple

import numpy as np

RGBA = Tuple[int, int, int, float]
Gradient = Callable[[float, float], RGBA]

# Where the extended sinebow stops cycling hue and fades to white.
SINEBOW_BOUNDARY = 0.45


def sinebow_color(hue: float, alpha: float) -> RGBA:
    # Five sixths of a turn so hue 0 and hue 1 stay distinct, then sped up to 2/3 cycle per radian.
    rad = hue * 2 * math.pi * 5 / 6
    rad *= 0.75
    s = math.sin(rad)
    c = math.cos(rad)
    r = math.floor(max(0.0, -c) * 255)
    g = math.floor(max(s, 0.0) * 255)
    b = math.floor(max(c, 0.0, -s) * 255)
    return r, g, b, alpha


def color_interpolator(start: Sequence[float], end: Sequence[float]) -> Gradient:
    r, g, b = float(start[0]), float(start[1]), float(start[2])
    dr, dg, db = end[0] - r, end[1] - g, end[2] - b

    def interpolate(i: float, alpha: float) -> RGBA:
        return math.floor(r + i * dr), math.floor(g + i * dg), math.floor(b + i * db), alpha

    return interpolate


_FADE_TO_WHITE = color_interpolator(sinebow_color(1.0, 0)[:3], (255, 255, 255))


def extended_sinebow_color(i: float, alpha: float) -> RGBA:
    if i <= SINEBOW_BOUNDARY:
        return sinebow_color(i / SINEBOW_BOUNDARY, alpha)
    return _FADE_TO_WHITE((i - SINEBOW_BOUNDARY) / (1 - SINEBOW_BOUNDARY), alpha)


def segmented_color_scale(segments: Sequence[Tuple[float, Sequence[float]]]) -> Gradient:
    """Piecewise-linear gradient through (value, rgb) stops, clamped at both ends."""
    if len(segments) < 2:
        raise ValueError("A segmented color scale needs at least two stops")
    stops = np.array([float(point) for point, _ in segments], dtype=np.float64)
    if np.any(np.diff(stops) <= 0):
        raise ValueError("Color scale stops must be strictly increasing")
    colors = np.array([list(color) for _, color in segments], dtype=np.float64)
    if colors.ndim != 2 or colors.shape[1] != 3:
        raise ValueError("Color scale colors must be RGB triples")

    def gradient(value: float, alpha: float) -> RGBA:
        r = np.interp(value, stops, colors[:, 0])
        g = np.interp(value, stops, colors[:, 1])
        b = np.interp(value, stops, colors[:, 2])
        return int(math.floor(r)), int(math.floor(g)), int(math.floor(b)), alpha

    return gradient
