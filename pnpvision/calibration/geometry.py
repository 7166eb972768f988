"""
Units-aware geometry primitives for machine and vision calibration.

Provides immutable lengths and locations (X, Y, Z plus a rotation about Z)
used by every calibration and alignment routine. All rotations are in
degrees, counter-clockwise positive, as seen from above the machine.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional
import math

import numpy as np
from scipy.spatial.transform import Rotation as R


class LengthUnit(Enum):
    MILLIMETERS = ("mm", 1.0)
    CENTIMETERS = ("cm", 10.0)
    METERS = ("m", 1000.0)
    INCHES = ("in", 25.4)
    FEET = ("ft", 304.8)
    MICRONS = ("um", 0.001)

    def __init__(self, short_name: str, mm_per_unit: float):
        self.short_name = short_name
        self.mm_per_unit = mm_per_unit

    def convert(self, value: float, units: "LengthUnit") -> float:
        """Convert a value in these units into the given units."""
        if units is self:
            return value
        return value * self.mm_per_unit / units.mm_per_unit

    @classmethod
    def from_name(cls, name: str) -> "LengthUnit":
        for unit in cls:
            if name.lower() in (unit.name.lower(), unit.short_name):
                return unit
        raise ValueError(f"Unknown length unit: {name}")


def angle_norm(angle: float, limit: float = 45.0) -> float:
    """Wrap an angle into [-limit, limit] by steps of 2*limit."""
    clip = limit * 2
    while angle > limit:
        angle -= clip
    while angle < -limit:
        angle += clip
    return angle


def normalize_angle_180(angle: float) -> float:
    """Wrap an angle into (-180, 180]."""
    angle = math.fmod(angle, 360.0)
    if angle <= -180.0:
        angle += 360.0
    elif angle > 180.0:
        angle -= 360.0
    return angle


def rotation_matrix_z(angle_deg: float) -> np.ndarray:
    """2x2 counter-clockwise rotation matrix for the XY plane."""
    return R.from_euler('z', angle_deg, degrees=True).as_matrix()[:2, :2]


@dataclass(frozen=True)
class Length:
    value: float
    units: LengthUnit = LengthUnit.MILLIMETERS

    def convert_to_units(self, units: LengthUnit) -> "Length":
        return Length(self.units.convert(self.value, units), units)

    def to_mm(self) -> float:
        return self.units.convert(self.value, LengthUnit.MILLIMETERS)

    def add(self, other: "Length") -> "Length":
        return Length(self.value + other.units.convert(other.value, self.units), self.units)

    def subtract(self, other: "Length") -> "Length":
        return Length(self.value - other.units.convert(other.value, self.units), self.units)

    def multiply(self, factor: float) -> "Length":
        return Length(self.value * factor, self.units)

    def compare_to(self, other: "Length") -> int:
        mine = self.to_mm()
        theirs = other.to_mm()
        return (mine > theirs) - (mine < theirs)

    def __lt__(self, other: "Length") -> bool:
        return self.compare_to(other) < 0

    def __gt__(self, other: "Length") -> bool:
        return self.compare_to(other) > 0

    def __str__(self) -> str:
        return f"{self.value:.6f}{self.units.short_name}"


@dataclass(frozen=True)
class Location:
    """
    A unit-tagged point with a rotation.

    The arithmetic methods always convert the argument into this location's
    units first, so the result carries the receiver's units.
    """
    units: LengthUnit = LengthUnit.MILLIMETERS
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    rotation: float = 0.0

    def convert_to_units(self, units: LengthUnit) -> "Location":
        if units is self.units:
            return self
        return Location(
            units,
            self.units.convert(self.x, units),
            self.units.convert(self.y, units),
            self.units.convert(self.z, units),
            self.rotation,
        )

    def derive(self,
               x: Optional[float] = None,
               y: Optional[float] = None,
               z: Optional[float] = None,
               rotation: Optional[float] = None) -> "Location":
        """Copy with the given fields replaced; None keeps the current value."""
        return replace(
            self,
            x=self.x if x is None else x,
            y=self.y if y is None else y,
            z=self.z if z is None else z,
            rotation=self.rotation if rotation is None else rotation,
        )

    def add(self, other: "Location") -> "Location":
        o = other.convert_to_units(self.units)
        return Location(self.units, self.x + o.x, self.y + o.y, self.z + o.z, self.rotation)

    def subtract(self, other: "Location") -> "Location":
        o = other.convert_to_units(self.units)
        return Location(self.units, self.x - o.x, self.y - o.y, self.z - o.z, self.rotation)

    def add_with_rotation(self, other: "Location") -> "Location":
        o = other.convert_to_units(self.units)
        return Location(self.units, self.x + o.x, self.y + o.y, self.z + o.z,
                        self.rotation + o.rotation)

    def subtract_with_rotation(self, other: "Location") -> "Location":
        o = other.convert_to_units(self.units)
        return Location(self.units, self.x - o.x, self.y - o.y, self.z - o.z,
                        self.rotation - o.rotation)

    def rotate_xy(self, angle: float) -> "Location":
        """Rotate X/Y counter-clockwise about the origin; Z and rotation are kept."""
        if angle == 0.0:
            return self
        x, y = rotation_matrix_z(angle) @ np.array([self.x, self.y])
        return Location(self.units, float(x), float(y), self.z, self.rotation)

    def linear_distance_to(self, other: "Location") -> float:
        """XY distance to the other location, in this location's units."""
        o = other.convert_to_units(self.units)
        return math.hypot(self.x - o.x, self.y - o.y)

    def dot_product(self, other: "Location") -> Length:
        o = other.convert_to_units(self.units)
        return Length(self.x * o.x + self.y * o.y + self.z * o.z, self.units)

    def unit_vector(self) -> "Location":
        norm = math.sqrt(self.x ** 2 + self.y ** 2 + self.z ** 2)
        if norm == 0.0:
            return Location(self.units)
        return Location(self.units, self.x / norm, self.y / norm, self.z / norm, 0.0)

    @property
    def length_x(self) -> Length:
        return Length(self.x, self.units)

    @property
    def length_y(self) -> Length:
        return Length(self.y, self.units)

    @property
    def length_z(self) -> Length:
        return Length(self.z, self.units)

    def xy(self) -> np.ndarray:
        return np.array([self.x, self.y])

    def to_dict(self) -> dict:
        return {
            'units': self.units.short_name,
            'x': self.x,
            'y': self.y,
            'z': self.z,
            'rotation': self.rotation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Location":
        return cls(
            LengthUnit.from_name(data.get('units', 'mm')),
            float(data.get('x', 0.0)),
            float(data.get('y', 0.0)),
            float(data.get('z', 0.0)),
            float(data.get('rotation', 0.0)),
        )

    def __str__(self) -> str:
        return (f"({self.x:.6f}, {self.y:.6f}, {self.z:.6f}, {self.rotation:.6f} "
                f"{self.units.short_name})")
