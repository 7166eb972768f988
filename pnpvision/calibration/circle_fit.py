"""
Least-squares circle fitting (Kasa method).

The measured offsets of a rotating nozzle tip describe a circle around the
rotation axis; the circle radius is the runout. The Kasa method works well
here since the points are captured along the full circle.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence, Union

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from .exceptions import CircleFitError
from .geometry import Location

logger = logging.getLogger(__name__)

PointLike = Union[Location, Sequence[float]]


@dataclass(frozen=True)
class CircleFit:
    center_x: float
    center_y: float
    radius: float


def _as_xy(points: Iterable[PointLike]) -> np.ndarray:
    xy = []
    for p in points:
        if isinstance(p, Location):
            xy.append((p.x, p.y))
        else:
            xy.append((float(p[0]), float(p[1])))
    return np.asarray(xy, dtype=float).reshape(-1, 2)


def kasa_circle_fit(points: Iterable[PointLike]) -> CircleFit:
    """
    Fit a circle to 2D points.

    Args:
        points: At least 3 points, either Locations (same units) or (x, y) pairs

    Returns:
        CircleFit with center and radius. If all points coincide, the center is
        the first point and the radius is 0.

    Raises:
        CircleFitError: If fewer than 3 points are given
    """
    xy = _as_xy(points)
    n = len(xy)
    if n < 3:
        raise CircleFitError(f"Need at least 3 points for circle fitting, got {n}")

    if not np.any(np.ptp(xy, axis=0)):
        logger.debug("Coincident points, using first point as center")
        return CircleFit(float(xy[0, 0]), float(xy[0, 1]), 0.0)

    mean = xy.mean(axis=0)
    centered = xy - mean
    xi = centered[:, 0]
    yi = centered[:, 1]
    zi = xi * xi + yi * yi

    mxx = np.sum(xi * xi) / n
    myy = np.sum(yi * yi) / n
    mxy = np.sum(xi * yi) / n
    mxz = np.sum(xi * zi) / n
    myz = np.sum(yi * zi) / n

    moments = np.array([[mxx, mxy], [mxy, myy]])
    rhs = np.array([mxz, myz]) / 2.0
    try:
        b, c = cho_solve(cho_factor(moments, lower=True), rhs)
        center_x = b + mean[0]
        center_y = c + mean[1]
        radius = np.sqrt(b * b + c * c + mxx + myy)
    except (LinAlgError, ValueError):
        center_x = center_y = radius = np.nan

    if not np.all(np.isfinite([center_x, center_y, radius])):
        # Coincident points: zero runout, constant offset.
        logger.debug("Degenerate circle fit, using first point as center")
        return CircleFit(float(xy[0, 0]), float(xy[0, 1]), 0.0)

    fit = CircleFit(float(center_x), float(center_y), float(radius))
    logger.debug(f"Kasa fit: center=({fit.center_x:.6f}, {fit.center_y:.6f}), radius={fit.radius:.6f}")
    return fit
