"""
Machine Collaborator Abstractions

The calibration and alignment routines only command moves and request
detections; they never talk to drivers or cameras directly. This module
defines the capabilities they rely on, plus the axis and head settings the
calibrators read and write.
"""

import abc
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .geometry import Length, LengthUnit, Location


class AxisType(Enum):
    X = "X"
    Y = "Y"
    Z = "Z"
    ROTATION = "Rotation"


class BacklashCompensationMethod(Enum):
    NONE = "None"
    DIRECTIONAL = "DirectionalCompensation"
    ONE_SIDED = "OneSidedPositioning"


@dataclass
class AxisBacklashSettings:
    """Backlash compensation as read by the motion layer on every axis move."""
    method: BacklashCompensationMethod = BacklashCompensationMethod.NONE
    offset: Length = field(default_factory=lambda: Length(0.0, LengthUnit.MILLIMETERS))
    speed_factor: float = 1.0

    def copy(self) -> "AxisBacklashSettings":
        return AxisBacklashSettings(self.method, self.offset, self.speed_factor)


@dataclass
class ControllerAxis:
    name: str
    axis_type: AxisType
    resolution: float = 0.0001  # in driver units
    driver_units: LengthUnit = LengthUnit.MILLIMETERS
    backlash: AxisBacklashSettings = field(default_factory=AxisBacklashSettings)


@dataclass
class NozzleTip:
    id: str
    max_part_height: Length = field(default_factory=lambda: Length(10.0))
    max_part_diameter: Length = field(default_factory=lambda: Length(20.0))
    unloaded_standin: bool = False


@dataclass
class Head:
    name: str
    fiducial_location: Location
    fiducial_diameter: Length


class Movable(abc.ABC):
    """Anything the machine can position: nozzles, head cameras."""

    def __init__(self, id: str):
        self.id = id
        self.logger = logging.getLogger(self.__class__.__name__)

    @abc.abstractmethod
    def move_to(self, location: Location, speed: float = 1.0):
        """Move to the location and wait for completion."""
        pass

    @abc.abstractmethod
    def move_to_safe_z(self, speed: float = 1.0):
        """Raise to safe Z and wait for completion."""
        pass

    @abc.abstractmethod
    def get_location(self) -> Location:
        pass

    def camera_tool_calibrated_offset(self, camera: "Camera") -> Location:
        """Tool specific camera offset; none by default."""
        return Location(LengthUnit.MILLIMETERS)

    def to_raw(self, location: Location) -> Dict[AxisType, float]:
        """Raw axis coordinates (mm, degrees) for a logical location."""
        mm = location.convert_to_units(LengthUnit.MILLIMETERS)
        return {
            AxisType.X: mm.x,
            AxisType.Y: mm.y,
            AxisType.Z: mm.z,
            AxisType.ROTATION: mm.rotation,
        }

    def to_transformed(self, raw: Dict[AxisType, float]) -> Location:
        return Location(LengthUnit.MILLIMETERS,
                        raw[AxisType.X], raw[AxisType.Y], raw[AxisType.Z], raw[AxisType.ROTATION])


def move_to_location_at_safe_z(movable: Movable, location: Location, speed: float = 1.0):
    """Raise to safe Z, then move to the location."""
    movable.move_to_safe_z(speed)
    movable.move_to(location, speed)


class FocusProvider(abc.ABC):

    @abc.abstractmethod
    def auto_focus(self, camera: "Camera", movable: Movable, sub_diameter: Length,
                   location0: Location, location1: Location) -> Location:
        """Return the in-focus location between location0 and location1."""
        pass


class Camera(abc.ABC):
    """
    A calibrated camera.

    head_offsets and rotation are the mounting calibration, which the nozzle
    runout calibrator may update in camera calibration mode.
    """

    def __init__(self, name: str, width: int, height: int, units_per_pixel: Location,
                 head_offsets: Optional[Location] = None, rotation: float = 0.0,
                 focus_provider: Optional[FocusProvider] = None):
        self.name = name
        self.width = width
        self.height = height
        self.units_per_pixel = units_per_pixel
        self.head_offsets = head_offsets if head_offsets is not None else Location(units_per_pixel.units)
        self.rotation = rotation
        self.focus_provider = focus_provider
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def location(self) -> Location:
        return self.head_offsets.derive(rotation=self.rotation)

    def location_for(self, tool: Optional[Movable]) -> Location:
        """
        Camera location as seen by the given tool.

        The tool specific offset is where the tool appears relative to the
        camera center, so moving the tool here centers it over the camera.
        """
        if tool is None:
            return self.location
        return self.location.subtract(tool.camera_tool_calibrated_offset(self))

    @abc.abstractmethod
    def capture(self) -> Any:
        """Capture an image."""
        pass


class Nozzle(Movable):

    @property
    @abc.abstractmethod
    def nozzle_tip(self) -> Optional[NozzleTip]:
        """The loaded nozzle tip, or the unloaded stand-in."""
        pass

    @property
    def part(self):
        return None


class VisionPipeline(abc.ABC):

    @abc.abstractmethod
    def process(self, camera: Camera, **properties) -> Any:
        """
        Capture and process one image.

        Returns:
            The pipeline results model: a list of results, a single result,
            None if nothing was found, or an Exception raised inside a stage
        """
        pass


class FiducialLocator(abc.ABC):

    @abc.abstractmethod
    def detected_location(self, camera: Camera, location: Location, diameter: Length) -> Location:
        """Location of the fiducial near the given location, as measured by the camera."""
        pass


class Machine(abc.ABC):

    @abc.abstractmethod
    def is_homed(self) -> bool:
        pass

    @property
    @abc.abstractmethod
    def bottom_camera(self) -> Optional[Camera]:
        pass
