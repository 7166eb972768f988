"""
Simulated Machine

A minimal simulated pick and place machine for tests and dry runs:

- SimulatedNozzle: applies a runout circle and an axis offset to its
  commanded position, and optionally a runout compensation
- SimulatedUpCamera: renders the nozzle tip (and a picked part) with OpenCV,
  including camera mounting position and rotation errors
- SimulatedHeadCamera: a down-looking camera on axes with mechanical backlash
- CircularSymmetryPipeline / MinAreaRectPipeline: detection on rendered frames
"""

import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import cv2
import numpy as np

from .bottom_vision_aligner import Part
from .circular_symmetry import CircularSymmetryDetector
from .geometry import Length, LengthUnit, Location
from .machine import (
    AxisType,
    BacklashCompensationMethod,
    Camera,
    ControllerAxis,
    FiducialLocator,
    Machine,
    Movable,
    Nozzle,
    NozzleTip,
    VisionPipeline,
)
from .vision_utils import RotatedRect, to_pixels

# Sub-pixel bits for OpenCV drawing
_SHIFT = 4


@dataclass
class RunoutError:
    """Mechanical imperfection of a nozzle tip."""
    radius: float = 0.0      # mm
    phase: float = 0.0       # degrees
    axis_offset: Location = field(default_factory=Location)

    def offset(self, angle: float) -> Location:
        a = math.radians(angle + self.phase)
        return self.axis_offset.add(Location(LengthUnit.MILLIMETERS,
                                             self.radius * math.cos(a), self.radius * math.sin(a), 0.0, 0.0))


class SimulatedNozzle(Nozzle):
    """Nozzle whose physical tip location deviates from the commanded one by its runout."""

    def __init__(self, id: str, nozzle_tip: Optional[NozzleTip] = None,
                 runout: Optional[RunoutError] = None,
                 tip_diameter: float = 1.0,
                 safe_z: float = 0.0,
                 compensation: Optional[Callable[["SimulatedNozzle", float], Location]] = None,
                 camera_offset: Optional[Callable[["SimulatedNozzle", Camera], Location]] = None):
        super().__init__(id)
        self._nozzle_tip = nozzle_tip
        self.runout = runout or RunoutError()
        self.tip_diameter = tip_diameter
        self.safe_z = safe_z
        self.compensation = compensation
        self.camera_offset = camera_offset
        self.location = Location(LengthUnit.MILLIMETERS, 0.0, 0.0, safe_z, 0.0)
        self._part: Optional[Part] = None
        # How the part sits on the tip at rotation 0: XY offset and rotation error
        self.part_pick_offset = Location(LengthUnit.MILLIMETERS)
        self.moves: List[Location] = []

    @property
    def nozzle_tip(self) -> Optional[NozzleTip]:
        return self._nozzle_tip

    @nozzle_tip.setter
    def nozzle_tip(self, tip: Optional[NozzleTip]):
        self._nozzle_tip = tip

    @property
    def part(self) -> Optional[Part]:
        return self._part

    def pick(self, part: Part, pick_offset: Optional[Location] = None):
        self._part = part
        if pick_offset is not None:
            self.part_pick_offset = pick_offset

    def move_to(self, location: Location, speed: float = 1.0):
        self.location = location.convert_to_units(LengthUnit.MILLIMETERS)
        self.moves.append(self.location)

    def move_to_safe_z(self, speed: float = 1.0):
        self.location = self.location.derive(z=self.safe_z)

    def get_location(self) -> Location:
        return self.location

    def camera_tool_calibrated_offset(self, camera: Camera) -> Location:
        if self.camera_offset is None:
            return super().camera_tool_calibrated_offset(camera)
        return self.camera_offset(self, camera)

    def physical_location(self) -> Location:
        """Where the tip really is."""
        location = self.location
        if self.compensation is not None:
            location = location.subtract(self.compensation(self, location.rotation))
        return location.add(self.runout.offset(location.rotation))

    def physical_part_location(self) -> Location:
        tip = self.physical_location()
        return tip.add(self.part_pick_offset.rotate_xy(tip.rotation)).derive(
            rotation=tip.rotation + self.part_pick_offset.rotation)


class SimulatedUpCamera(Camera):
    """
    Up-looking camera rendering the nozzles above it.

    head_offsets/rotation are the calibrated (believed) values, while
    physical_location/physical_rotation describe the real mounting.
    """

    def __init__(self, name: str = "Bottom", width: int = 320, height: int = 240,
                 units_per_pixel: Optional[Location] = None,
                 head_offsets: Optional[Location] = None,
                 physical_location: Optional[Location] = None,
                 physical_rotation: float = 0.0,
                 focus_provider=None):
        upp = units_per_pixel or Location(LengthUnit.MILLIMETERS, 0.05, 0.05, 0.0, 0.0)
        super().__init__(name, width, height, upp, head_offsets, 0.0, focus_provider)
        self.physical_location = physical_location if physical_location is not None else self.head_offsets
        self.physical_rotation = physical_rotation
        self.nozzles: List[SimulatedNozzle] = []

    def _to_pixels(self, location: Location):
        offset = location.convert_to_units(self.units_per_pixel.units).subtract(self.physical_location)
        # The calibrated rotation is applied to the image, adding to the mounting error.
        offset = offset.rotate_xy(-(self.physical_rotation + self.rotation))
        x = self.width / 2.0 + offset.x / self.units_per_pixel.x
        y = self.height / 2.0 - offset.y / self.units_per_pixel.y
        return x, y

    def capture(self) -> np.ndarray:
        image = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        scale = 1 << _SHIFT
        for nozzle in self.nozzles:
            x, y = self._to_pixels(nozzle.physical_location())
            radius = to_pixels(Length(nozzle.tip_diameter / 2.0, LengthUnit.MILLIMETERS), self)
            cv2.circle(image, (int(round(x * scale)), int(round(y * scale))), int(round(radius * scale)),
                       (255, 255, 255), -1, cv2.LINE_AA, _SHIFT)

            part = nozzle.part
            if part is None or part.footprint.body_width <= 0 or part.footprint.body_height <= 0:
                continue
            location = nozzle.physical_part_location()
            px, py = self._to_pixels(location)
            footprint = part.footprint
            w = to_pixels(Length(footprint.body_width, footprint.units), self)
            h = to_pixels(Length(footprint.body_height, footprint.units), self)
            # Image angles run clockwise (Y down).
            angle = -(location.rotation - self.physical_rotation - self.rotation)
            corners = cv2.boxPoints(((px, py), (w, h), angle))
            cv2.fillPoly(image, [np.round(corners * scale).astype(np.int32)], (200, 200, 200),
                         cv2.LINE_AA, _SHIFT)
        return image


class SimulatedHeadCamera(Camera, Movable):
    """
    Down-looking head camera moved by X/Y axes with mechanical backlash.

    Approaching a coordinate in negative direction leaves the carriage
    behind by the backlash (less an overshoot growing with speed), unless the
    axis backlash compensation takes care of it.
    """

    def __init__(self, name: str = "Top", width: int = 320, height: int = 240,
                 units_per_pixel: Optional[Location] = None,
                 axes: Optional[Dict[AxisType, ControllerAxis]] = None,
                 backlash: Optional[Dict[AxisType, float]] = None,
                 overshoot_per_speed: float = 0.0,
                 safe_z: float = 0.0):
        upp = units_per_pixel or Location(LengthUnit.MILLIMETERS, 0.02, 0.02, 0.0, 0.0)
        Camera.__init__(self, name, width, height, upp)
        Movable.__init__(self, name)
        self.axes = axes or {
            AxisType.X: ControllerAxis("x", AxisType.X),
            AxisType.Y: ControllerAxis("y", AxisType.Y),
        }
        self.backlash = backlash or {}
        self.overshoot_per_speed = overshoot_per_speed
        self.safe_z = safe_z
        self.commanded = Location(LengthUnit.MILLIMETERS)
        self.physical = Location(LengthUnit.MILLIMETERS)

    @property
    def location(self) -> Location:
        return self.commanded

    def capture(self) -> np.ndarray:
        return np.zeros((self.height, self.width, 3), dtype=np.uint8)

    def _physical_coordinate(self, axis_type: AxisType, current: float, physical: float,
                             target: float, speed: float) -> float:
        if target == current:
            return physical
        if target > current:
            return target
        axis = self.axes.get(axis_type)
        settings = axis.backlash if axis is not None else None
        if settings is not None and settings.method is BacklashCompensationMethod.ONE_SIDED:
            # Final approach always from below.
            return target
        lag = self.backlash.get(axis_type, 0.0) - self.overshoot_per_speed * speed
        if settings is not None and settings.method is BacklashCompensationMethod.DIRECTIONAL:
            lag -= settings.offset.to_mm()
        return target + lag

    def move_to(self, location: Location, speed: float = 1.0):
        target = location.convert_to_units(LengthUnit.MILLIMETERS)
        x = self._physical_coordinate(AxisType.X, self.commanded.x, self.physical.x, target.x, speed)
        y = self._physical_coordinate(AxisType.Y, self.commanded.y, self.physical.y, target.y, speed)
        self.commanded = target
        self.physical = target.derive(x=x, y=y)

    def move_to_safe_z(self, speed: float = 1.0):
        self.commanded = self.commanded.derive(z=self.safe_z)
        self.physical = self.physical.derive(z=self.safe_z)

    def get_location(self) -> Location:
        return self.commanded


class SimulatedFiducialLocator(FiducialLocator):
    """Reports a fiducial as seen from the physical camera position."""

    def __init__(self, fiducial_location: Location):
        self.fiducial_location = fiducial_location.convert_to_units(LengthUnit.MILLIMETERS)

    def detected_location(self, camera: Camera, location: Location, diameter: Length) -> Location:
        physical = camera.physical if isinstance(camera, SimulatedHeadCamera) else camera.location
        seen = self.fiducial_location.subtract(physical)
        return camera.location.add(seen).derive(z=location.z, rotation=0.0)


class CircularSymmetryPipeline(VisionPipeline):
    """Captures a frame and runs the circular symmetry detector on it."""

    def __init__(self, detector: Optional[CircularSymmetryDetector] = None,
                 expected_diameter: Optional[Length] = None):
        self.detector = detector or CircularSymmetryDetector(max_distance=30)
        self.expected_diameter = expected_diameter
        self.last_image = None

    def process(self, camera: Camera, **properties):
        image = camera.capture()
        self.last_image = image
        diameter_px = None
        if self.expected_diameter is not None:
            diameter_px = to_pixels(self.expected_diameter, camera)
        return self.detector.detect(image, center=properties.get('center'), diameter_px=diameter_px)


class MinAreaRectPipeline(VisionPipeline):
    """Captures a frame and returns the minimum area rectangle of the largest blob."""

    def __init__(self, threshold: int = 127):
        self.threshold = threshold
        self.last_image = None

    def process(self, camera: Camera, **properties):
        image = camera.capture()
        self.last_image = image
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        _, mask = cv2.threshold(gray, self.threshold, 255, cv2.THRESH_BINARY)
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
        if not contours:
            return None
        largest = max(contours, key=cv2.contourArea)
        return RotatedRect.from_cv(cv2.minAreaRect(largest))


class SimulatedMachine(Machine):

    def __init__(self, bottom_camera: Optional[SimulatedUpCamera] = None, homed: bool = True):
        self._bottom_camera = bottom_camera
        self.homed = homed

    def is_homed(self) -> bool:
        return self.homed

    def home(self):
        self.homed = True

    @property
    def bottom_camera(self) -> Optional[SimulatedUpCamera]:
        return self._bottom_camera
