"""
Bottom Vision Part Alignment

Measures the pose of a picked part over the bottom camera and returns the
correction to apply at placement. Two modes:

- Pre-rotate: rotate to the placement angle first, then measure and
  re-position iteratively until the fix is within tolerance
- Post-rotate: measure once at 0° and let the placement rotate the part
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .exceptions import AlignmentError, PartSizeError, VisionError
from .geometry import Length, LengthUnit, Location, angle_norm
from .machine import Camera, Machine, Nozzle, VisionPipeline, move_to_location_at_safe_z
from .vision_utils import RotatedRect, pixel_angle, pixel_center_offsets, to_pixels


class PreRotateUsage(Enum):
    DEFAULT = "Default"
    ALWAYS_ON = "AlwaysOn"
    ALWAYS_OFF = "AlwaysOff"


class PartSizeCheckMethod(Enum):
    DISABLED = "Disabled"
    BODY_SIZE = "BodySize"
    PAD_EXTENTS = "PadExtents"


class MaxRotation(Enum):
    ADJUST = "Adjust"
    FULL = "Full"

    @property
    def limit(self) -> float:
        return 45.0 if self is MaxRotation.ADJUST else 180.0


@dataclass
class BottomVisionSettings:
    """Per part (or package) bottom vision settings."""
    enabled: bool = True
    pre_rotate_usage: PreRotateUsage = PreRotateUsage.DEFAULT
    max_rotation: MaxRotation = MaxRotation.ADJUST
    check_part_size_method: PartSizeCheckMethod = PartSizeCheckMethod.DISABLED
    check_size_tolerance_percent: int = 20
    vision_offset: Location = field(default_factory=Location)

    def __post_init__(self):
        # Only X/Y of the vision offset are meaningful.
        self.vision_offset = self.vision_offset.derive(z=0.0, rotation=0.0)


@dataclass
class BottomVisionAlignerSettings:
    enabled: bool = True
    pre_rotate: bool = False
    max_vision_passes: int = 3
    max_linear_offset: Length = field(default_factory=lambda: Length(1.0, LengthUnit.MILLIMETERS))
    max_angular_offset: float = 10.0


@dataclass
class Footprint:
    units: LengthUnit = LengthUnit.MILLIMETERS
    body_width: float = 0.0
    body_height: float = 0.0
    pad_extents: Tuple[float, float] = (0.0, 0.0)


@dataclass
class Part:
    id: str
    height: Optional[Length] = None
    footprint: Footprint = field(default_factory=Footprint)
    vision_settings: Optional[BottomVisionSettings] = None

    def is_part_height_unknown(self) -> bool:
        return self.height is None or self.height.value <= 0.0


@dataclass(frozen=True)
class PartAlignmentOffset:
    location: Location
    pre_rotated: bool


@dataclass(frozen=True)
class PassEvaluation:
    """Outcome of one pre-rotate vision pass."""
    offsets: Location
    angle_offset: float
    next_nozzle_location: Location
    accepted: bool
    reason: str = ""


def evaluate_pass(camera: Camera, rect: RotatedRect, wanted_angle: float,
                  nozzle_location: Location, max_rotation: MaxRotation,
                  max_linear_offset: Length, max_angular_offset: float) -> PassEvaluation:
    """
    Evaluate one pre-rotate measurement.

    Args:
        camera: Camera the rectangle was detected with
        rect: Detected part outline
        wanted_angle: Placement angle the nozzle was rotated to
        nozzle_location: Current commanded nozzle location
        max_rotation: Wrap policy for the rectangle angle
        max_linear_offset: Tolerance for the center and corner offsets
        max_angular_offset: Tolerance for the angle offset, in degrees

    Returns:
        PassEvaluation with the measured offsets and the corrected nozzle location
    """
    offsets = pixel_center_offsets(camera, rect.center[0], rect.center[1])
    angle_offset = angle_norm(pixel_angle(camera, rect.angle) - wanted_angle, max_rotation.limit)

    # Rotating the nozzle later also rotates the off-center part, so counter-rotate the offset.
    offsets = offsets.rotate_xy(-angle_offset).derive(rotation=angle_offset)
    next_location = nozzle_location.subtract_with_rotation(offsets)

    # A large part reacts more sensitively to angular offsets, so check a corner too.
    corner_px = rect.points()[0]
    corner = pixel_center_offsets(camera, corner_px[0], corner_px[1]).convert_to_units(max_linear_offset.units)
    corner_rotated = corner.rotate_xy(angle_offset)
    center = Location(max_linear_offset.units)

    center_distance = center.linear_distance_to(offsets)
    corner_distance = corner.linear_distance_to(corner_rotated)
    if center_distance > max_linear_offset.value:
        reason = f"center offset {center_distance:.4f} > {max_linear_offset.value}"
    elif corner_distance > max_linear_offset.value:
        reason = f"corner offset {corner_distance:.4f} > {max_linear_offset.value}"
    elif abs(angle_offset) > max_angular_offset:
        reason = f"angle offset {abs(angle_offset):.4f} > {max_angular_offset}"
    else:
        return PassEvaluation(offsets, angle_offset, next_location, True)
    return PassEvaluation(offsets, angle_offset, next_location, False, reason)


def part_size_check(part: Part, settings: BottomVisionSettings, rect: RotatedRect, camera: Camera) -> bool:
    """Compare the detected outline against the footprint within the size tolerance."""
    method = settings.check_part_size_method
    footprint = part.footprint
    if method is PartSizeCheckMethod.DISABLED:
        return True
    if method is PartSizeCheckMethod.BODY_SIZE:
        check_width, check_height = footprint.body_width, footprint.body_height
    else:
        check_width, check_height = footprint.pad_extents

    # width is the longest dimension
    check_width, check_height = max(check_width, check_height), min(check_width, check_height)
    px_width = to_pixels(Length(check_width, footprint.units), camera)
    px_height = to_pixels(Length(check_height, footprint.units), camera)
    measured_width, measured_height = max(rect.size), min(rect.size)

    tolerance = 0.01 * settings.check_size_tolerance_percent
    logger = logging.getLogger(__name__)
    if abs(measured_width - px_width) > px_width * tolerance:
        logger.debug(f"Package pixel width {px_width:.1f}: measured {measured_width:.1f}")
        return False
    if abs(measured_height - px_height) > px_height * tolerance:
        logger.debug(f"Package pixel height {px_height:.1f}: measured {measured_height:.1f}")
        return False
    logger.debug(f"Package {part.id} pixel size ok. Width {measured_width:.1f}, Height {measured_height:.1f}")
    return True


class BottomVisionAligner:
    """Vision-guided part pose correction over the bottom camera."""

    def __init__(self, settings: BottomVisionAlignerSettings, machine: Machine,
                 pipeline: VisionPipeline,
                 default_part_settings: Optional[BottomVisionSettings] = None):
        self.settings = settings
        self.machine = machine
        self.pipeline = pipeline
        self.default_part_settings = default_part_settings or BottomVisionSettings()
        self.logger = logging.getLogger(__name__)

    def part_settings(self, part: Optional[Part]) -> BottomVisionSettings:
        if part is not None and part.vision_settings is not None:
            return part.vision_settings
        return self.default_part_settings

    def can_handle(self, settings: Optional[BottomVisionSettings], allow_disabled: bool = False) -> bool:
        if settings is None:
            return False
        return allow_disabled or (self.settings.enabled and settings.enabled)

    def find_offsets(self, part: Part, placement_location: Location, nozzle: Nozzle,
                     board_rotation: Optional[float] = None) -> PartAlignmentOffset:
        """
        Find the alignment correction of the part on the nozzle.

        Args:
            part: Part expected on the nozzle
            placement_location: Placement location; its rotation is the wanted angle
            nozzle: Nozzle holding the part
            board_rotation: Rotation of the board, added to the placement angle

        Returns:
            PartAlignmentOffset with the correction and whether it was pre-rotated
        """
        settings = self.part_settings(part)
        if not self.settings.enabled or not settings.enabled:
            return PartAlignmentOffset(Location(LengthUnit.MILLIMETERS), False)

        if part is None or nozzle.part is None:
            raise AlignmentError("No part on nozzle.")
        if part is not nozzle.part:
            raise AlignmentError("Part mismatch with part on nozzle.")

        camera = self.machine.bottom_camera
        if camera is None:
            raise AlignmentError("No bottom vision camera available.")

        usage = settings.pre_rotate_usage
        if (usage is PreRotateUsage.DEFAULT and self.settings.pre_rotate) or usage is PreRotateUsage.ALWAYS_ON:
            return self._find_offsets_pre_rotate(part, placement_location, nozzle, camera, settings,
                                                 board_rotation)
        return self._find_offsets_post_rotate(part, nozzle, camera, settings)

    def camera_location_at_part_height(self, part: Part, camera: Camera, nozzle: Nozzle,
                                       angle: float) -> Location:
        if part.is_part_height_unknown():
            tip = nozzle.nozzle_tip
            if camera.focus_provider is not None and tip is not None:
                location1 = camera.location_for(nozzle).derive(rotation=angle)
                location0 = location1.add(Location(tip.max_part_height.units, 0.0, 0.0,
                                                   tip.max_part_height.value, 0.0))
                focus = camera.focus_provider.auto_focus(camera, nozzle, tip.max_part_diameter,
                                                         location0, location1)
                part_height = focus.length_z.subtract(location1.length_z)
                if part_height.value <= 0.001:
                    raise AlignmentError(
                        "Auto focus part height determination failed. "
                        "Camera seems to have focused on nozzle tip.")
                self.logger.info(f"Part {part.id} height set to {part_height} by camera focus provider.")
                part.height = part_height
            if part.is_part_height_unknown():
                raise AlignmentError(
                    f"Part height unknown and camera {camera.name} does not support part height sensing.")
        return camera.location_for(nozzle).add(
            Location(part.height.units, 0.0, 0.0, part.height.value, 0.0)).derive(rotation=angle)

    def _process(self, camera: Camera, part: Part, nozzle: Nozzle) -> RotatedRect:
        result = self.pipeline.process(camera, part=part, nozzle=nozzle)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, (list, tuple)):
            result = result[0] if result else None
        if result is None:
            raise VisionError(f"Bottom vision ({part.id}): No result found.")
        if not isinstance(result, RotatedRect):
            raise VisionError(
                f"Bottom vision ({part.id}): Incorrect pipeline result type "
                f"({type(result).__name__}). Expected RotatedRect.")
        return result

    def _check_part_size(self, part: Part, settings: BottomVisionSettings, rect: RotatedRect,
                         camera: Camera):
        if not part_size_check(part, settings, rect, camera):
            raise PartSizeError(
                f"Bottom vision ({part.id}): Incorrect part size. Measured {rect.size[0]:.1f} x "
                f"{rect.size[1]:.1f} px, footprint tolerance {settings.check_size_tolerance_percent}%")

    def _find_offsets_pre_rotate(self, part: Part, placement_location: Location, nozzle: Nozzle,
                                 camera: Camera, settings: BottomVisionSettings,
                                 board_rotation: Optional[float]) -> PartAlignmentOffset:
        wanted_angle = placement_location.rotation
        if board_rotation is not None:
            wanted_angle += board_rotation
        wanted_angle = angle_norm(wanted_angle, 180.0)
        wanted_location = self.camera_location_at_part_height(part, camera, nozzle, wanted_angle)

        nozzle_location = wanted_location
        move_to_location_at_safe_z(nozzle, nozzle_location)

        evaluation = None
        passes = 0
        while True:
            rect = self._process(camera, part, nozzle)
            self.logger.debug(f"Bottom vision part {part.id} result rect {rect}")
            self._check_part_size(part, settings, rect, camera)

            evaluation = evaluate_pass(camera, rect, wanted_angle, nozzle_location,
                                       settings.max_rotation, self.settings.max_linear_offset,
                                       self.settings.max_angular_offset)
            nozzle_location = evaluation.next_nozzle_location

            passes += 1
            if passes >= self.settings.max_vision_passes:
                break
            if evaluation.accepted:
                break
            self.logger.debug(f"Offsets too large {evaluation.offsets}: {evaluation.reason}")
            nozzle.move_to(nozzle_location)

        self.logger.debug(f"Offsets accepted {evaluation.offsets} after {passes} pass(es)")
        # Cumulative offsets over all the passes.
        offsets = wanted_location.subtract_with_rotation(nozzle_location)
        offsets = offsets.subtract(settings.vision_offset.rotate_xy(wanted_angle))
        self.logger.debug(f"Final offsets {offsets}")
        return PartAlignmentOffset(offsets, True)

    def _find_offsets_post_rotate(self, part: Part, nozzle: Nozzle, camera: Camera,
                                  settings: BottomVisionSettings) -> PartAlignmentOffset:
        wanted_location = self.camera_location_at_part_height(part, camera, nozzle, 0.0)
        move_to_location_at_safe_z(nozzle, wanted_location)

        rect = self._process(camera, part, nozzle)
        self.logger.debug(f"Bottom vision part {part.id} result rect {rect}")

        offsets = pixel_center_offsets(camera, rect.center[0], rect.center[1])
        angle_offset = angle_norm(pixel_angle(camera, rect.angle), settings.max_rotation.limit)
        self._check_part_size(part, settings, rect, camera)

        offsets = offsets.derive(rotation=angle_offset)
        offsets = offsets.subtract(settings.vision_offset.rotate_xy(offsets.rotation))
        self.logger.debug(f"Final offsets {offsets}")
        return PartAlignmentOffset(offsets, False)
