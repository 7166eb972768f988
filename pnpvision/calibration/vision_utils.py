"""
Vision result types and pixel <-> physical conversions.

The vision pipeline reports results in image pixel coordinates (Y pointing
down). These helpers convert them into machine offsets relative to the
camera center (Y pointing up) using the camera's units per pixel.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from .geometry import Length, Location


@dataclass(frozen=True)
class Circle:
    """A detected circle in pixel coordinates."""
    x: float
    y: float
    diameter: float


@dataclass(frozen=True)
class KeyPoint:
    """A detected blob/keypoint in pixel coordinates."""
    x: float
    y: float
    size: float = 0.0


@dataclass(frozen=True)
class RotatedRect:
    """A detected rotated rectangle in pixel coordinates (OpenCV convention)."""
    center: Tuple[float, float]
    size: Tuple[float, float]
    angle: float

    def points(self) -> np.ndarray:
        """Return the 4 corners as a (4, 2) array."""
        box = ((float(self.center[0]), float(self.center[1])),
               (float(self.size[0]), float(self.size[1])),
               float(self.angle))
        return cv2.boxPoints(box).astype(float)

    @classmethod
    def from_cv(cls, rect) -> "RotatedRect":
        (cx, cy), (w, h), angle = rect
        return cls((float(cx), float(cy)), (float(w), float(h)), float(angle))


def pixel_center_offsets(camera, x: float, y: float) -> Location:
    """Physical offset of pixel (x, y) from the image center."""
    upp = camera.units_per_pixel
    offset_x = (x - camera.width / 2.0) * upp.x
    offset_y = (camera.height / 2.0 - y) * upp.y
    return Location(upp.units, offset_x, offset_y, 0.0, 0.0)


def pixel_angle(camera, angle: float) -> float:
    """Convert an image angle (Y down) into a machine angle (Y up)."""
    return -angle


def to_pixels(length: Length, camera) -> float:
    upp = camera.units_per_pixel
    value = length.convert_to_units(upp.units).value
    # circles can't be ovals, so use the average
    avg_units_per_pixel = (upp.x + upp.y) / 2.0
    return value / avg_units_per_pixel


def location_pixels(camera, location: Location, camera_location: Optional[Location] = None) -> Tuple[float, float]:
    """Pixel coordinates at which a machine location appears in the image."""
    upp = camera.units_per_pixel
    if camera_location is None:
        camera_location = camera.location
    offset = location.convert_to_units(upp.units).subtract(camera_location)
    x = camera.width / 2.0 + offset.x / upp.x
    y = camera.height / 2.0 - offset.y / upp.y
    return x, y


def result_center(result) -> Tuple[float, float]:
    """Pixel center of any supported detection result."""
    if isinstance(result, (Circle, KeyPoint)):
        return result.x, result.y
    if isinstance(result, RotatedRect):
        return result.center
    raise TypeError(f"Unrecognized result {result!r}")
