"""
Test configuration and shared fixtures for the calibration tests.
"""

import math
from typing import List, Optional

import numpy as np
import pytest

from pnpvision.calibration.geometry import LengthUnit, Location
from pnpvision.calibration.machine import Camera, Machine, Nozzle, NozzleTip, VisionPipeline
from pnpvision.calibration.vision_utils import Circle

MM = LengthUnit.MILLIMETERS


class FakeCamera(Camera):
    """Camera that never captures anything."""

    def capture(self):
        return np.zeros((self.height, self.width, 3), dtype=np.uint8)


class FakeNozzle(Nozzle):
    """Nozzle recording every commanded move."""

    def __init__(self, id: str = "N1", tip: Optional[NozzleTip] = None, part=None):
        super().__init__(id)
        self._tip = tip if tip is not None else NozzleTip("NT1")
        self._part = part
        self.location = Location(MM)
        self.moves: List[Location] = []
        self.safe_z_moves = 0

    @property
    def nozzle_tip(self):
        return self._tip

    def load_tip(self, tip: Optional[NozzleTip]):
        self._tip = tip

    @property
    def part(self):
        return self._part

    def move_to(self, location: Location, speed: float = 1.0):
        self.location = location
        self.moves.append(location)

    def move_to_safe_z(self, speed: float = 1.0):
        self.safe_z_moves += 1
        self.location = self.location.derive(z=0.0)

    def get_location(self) -> Location:
        return self.location


class FakeMachine(Machine):

    def __init__(self, camera: Optional[Camera] = None, homed: bool = True):
        self._camera = camera
        self.homed = homed

    def is_homed(self) -> bool:
        return self.homed

    @property
    def bottom_camera(self):
        return self._camera


class ScriptedPipeline(VisionPipeline):
    """Returns the given results in order, repeating the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def process(self, camera, **properties):
        self.calls.append(properties)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class NozzleTipPipeline(VisionPipeline):
    """
    Reports the nozzle tip where a nozzle with runout would appear.

    The tip deviates from the commanded location by a runout circle and an
    axis offset; the true camera may be displaced and rotated against the
    camera's calibrated location.
    """

    def __init__(self, nozzle: FakeNozzle, radius: float = 0.0, phase: float = 0.0,
                 axis_offset: Optional[Location] = None,
                 true_camera_location: Optional[Location] = None,
                 camera_rotation_error: float = 0.0):
        self.nozzle = nozzle
        self.radius = radius
        self.phase = phase
        self.axis_offset = axis_offset or Location(MM)
        self.true_camera_location = true_camera_location
        self.camera_rotation_error = camera_rotation_error

    def tip_offset(self, angle: float) -> Location:
        a = math.radians(angle + self.phase)
        return self.axis_offset.add(Location(MM, self.radius * math.cos(a), self.radius * math.sin(a)))

    def process(self, camera, **properties):
        location = self.nozzle.location
        true_camera = self.true_camera_location or camera.location
        offset = location.add(self.tip_offset(location.rotation)).subtract(true_camera)
        offset = offset.rotate_xy(-self.camera_rotation_error)
        upp = camera.units_per_pixel
        x = camera.width / 2.0 + offset.x / upp.x
        y = camera.height / 2.0 - offset.y / upp.y
        return [Circle(x, y, 20.0)]


@pytest.fixture
def camera():
    """Bottom camera, 640x480 at 20µm per pixel."""
    return FakeCamera("Bottom", 640, 480, Location(MM, 0.02, 0.02, 0.0, 0.0),
                      head_offsets=Location(MM, 100.0, 50.0, -20.0, 0.0))


@pytest.fixture
def nozzle():
    return FakeNozzle()


@pytest.fixture
def machine(camera):
    return FakeMachine(camera)


def circle_points(cx: float, cy: float, r: float, n: int, phase: float = 0.0):
    """n points on a circle, tagged with their angle as rotation."""
    points = []
    for angle in np.linspace(-180.0, 180.0, n, endpoint=False):
        a = math.radians(angle - phase)
        points.append(Location(MM, cx + r * math.cos(a), cy + r * math.sin(a), 0.0, float(angle)))
    return points
