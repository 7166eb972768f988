"""
Axis Backlash Calibration

Approaches the primary calibration fiducial from both sides of an axis at
several speed factors, and measures the difference in the detected fiducial
location. The per-speed results decide the compensation method:

- consistent over all speeds, below tolerance: no compensation
- consistent over all speeds: directional compensation with the mean offset
- consistent up to some speed: one-sided positioning at that speed
- overshoot even at the lowest speed: cannot be compensated
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .exceptions import BacklashCompensationError, CalibrationCancelledError
from .geometry import Length, LengthUnit, Location
from .machine import (
    AxisBacklashSettings,
    AxisType,
    BacklashCompensationMethod,
    Camera,
    ControllerAxis,
    FiducialLocator,
    Head,
    Movable,
    move_to_location_at_safe_z,
)


@dataclass
class BacklashCalibrationSettings:
    calibration_passes: int = 4
    error_dampening: float = 0.8
    test_move_mm: float = 20.0
    one_sided_safety_factor: float = 1.1
    speeds: Tuple[float, ...] = (0.25, 0.5, 0.75, 1.0)


@dataclass(frozen=True)
class BacklashPassStep:
    offset: float
    apply: bool
    done: bool


def backlash_pass_step(offset: float, mm_error: float, mm_axis: float, dampening: float,
                       tolerance: float, first_pass: bool) -> BacklashPassStep:
    """
    Accumulate one bidirectional measurement into the running offset estimate.

    Args:
        offset: Current backlash offset estimate, in mm
        mm_error: Signed error between the two approach directions, in mm
        mm_axis: Axis coordinate change per logical mm
        dampening: Fraction of the error corrected per pass
        tolerance: Axis calibration tolerance, in mm
        first_pass: True on the first pass of a speed

    Returns:
        BacklashPassStep with the new offset, whether to apply it, and whether
        the passes for this speed are done
    """
    offset += mm_error * mm_axis * dampening
    if first_pass and mm_error <= -tolerance:
        # Overshoot, cannot compensate at this speed.
        return BacklashPassStep(offset, False, True)
    return BacklashPassStep(offset, True, abs(mm_error) < tolerance)


def select_backlash_compensation(offsets: Sequence[float], speeds: Sequence[float],
                                 tolerance: float, safety_factor: float = 1.1,
                                 axis_name: str = "") -> AxisBacklashSettings:
    """
    Choose the compensation method from the per-speed offsets.

    A speed is consistent if its offset does not overshoot and stays within
    tolerance of the first speed's offset. Consistency is a prefix run.

    Raises:
        BacklashCompensationError: If not even the lowest speed is consistent
    """
    consistent = 0
    offset_sum = 0.0
    for offset in offsets:
        if offset <= -tolerance or abs(offset - offsets[0]) > tolerance:
            break
        offset_sum += offset
        consistent += 1
    offset_max = max((abs(o) for o in offsets), default=0.0)

    logger = logging.getLogger(__name__)
    for speed, offset in zip(speeds, offsets):
        logger.debug(f"Axis {axis_name} backlash offset at speed factor {speed} is {offset:.5f}")

    if consistent == 0:
        raise BacklashCompensationError(
            f"Axis {axis_name} seems to overshoot, even at the lowest speed factor. "
            f"Make sure the controller has effective acceleration/jerk control. "
            f"Automatic compensation not possible.")

    offset_avg = offset_sum / consistent
    logger.debug(
        f"Axis {axis_name} backlash analysis, consistent: {consistent}, "
        f"avg offset: {offset_avg:.5f}, max offset: {offset_max:.5f}")

    if consistent == len(offsets):
        if offset_avg < tolerance:
            method = BacklashCompensationMethod.NONE
        else:
            method = BacklashCompensationMethod.DIRECTIONAL
        return AxisBacklashSettings(method, Length(offset_avg, LengthUnit.MILLIMETERS),
                                    speeds[consistent - 1])
    return AxisBacklashSettings(BacklashCompensationMethod.ONE_SIDED,
                                Length(offset_max * safety_factor, LengthUnit.MILLIMETERS),
                                speeds[consistent - 1])


def axis_calibration_tolerance(camera: Camera, axis: ControllerAxis) -> float:
    """Larger of the axis resolution and 1.1 pixel steps along the axis, in mm."""
    resolution = Length(axis.resolution, axis.driver_units)
    upp = camera.units_per_pixel
    pixel_step = (upp.length_x if axis.axis_type is AxisType.X else upp.length_y).multiply(1.1)
    if pixel_step > resolution:
        resolution = pixel_step
    return resolution.to_mm()


class AxisBacklashCalibrator:
    """Calibrates backlash compensation of a linear axis with a fiducial and a camera."""

    def __init__(self, settings: BacklashCalibrationSettings, locator: FiducialLocator,
                 cancel_check: Optional[Callable[[], bool]] = None):
        self.settings = settings
        self.locator = locator
        self.cancel_check = cancel_check
        self.logger = logging.getLogger(__name__)

    def _check_cancelled(self):
        if self.cancel_check is not None and self.cancel_check():
            raise CalibrationCancelledError("Backlash calibration cancelled")

    @staticmethod
    def displaced_axis_location(movable: Movable, axis: ControllerAxis, location: Location,
                                displacement: float) -> Location:
        raw = movable.to_raw(location)
        raw[axis.axis_type] += displacement
        return movable.to_transformed(raw)

    def calibrate_axis_backlash(self, head: Head, camera: Camera, movable: Movable,
                                axis: ControllerAxis) -> AxisBacklashSettings:
        """
        Calibrate and set the backlash compensation of the axis.

        Args:
            head: Head carrying the primary calibration fiducial settings
            camera: Camera detecting the fiducial
            movable: The moving body; may be the camera itself
            axis: X or Y axis to calibrate

        Returns:
            The new backlash settings, also stored on the axis

        Raises:
            BacklashCompensationError: If the axis cannot be compensated; the
                previous settings are restored
        """
        previous = axis.backlash.copy()
        try:
            axis.backlash = self._calibrate(head, camera, movable, axis)
        except Exception:
            axis.backlash = previous
            raise
        self.logger.info(
            f"Axis {axis.name} backlash: method {axis.backlash.method.value}, "
            f"offset {axis.backlash.offset}, speed factor {axis.backlash.speed_factor}")
        return axis.backlash

    def _calibrate(self, head: Head, camera: Camera, movable: Movable,
                   axis: ControllerAxis) -> AxisBacklashSettings:
        location = head.fiducial_location.convert_to_units(LengthUnit.MILLIMETERS)
        diameter = head.fiducial_diameter
        unit = Location(LengthUnit.MILLIMETERS,
                        1.0 if axis.axis_type is AxisType.X else 0.0,
                        1.0 if axis.axis_type is AxisType.Y else 0.0,
                        0.0, 0.0)
        mm_axis = movable.to_raw(location.add(unit))[axis.axis_type] - movable.to_raw(location)[axis.axis_type]
        tolerance = axis_calibration_tolerance(camera, axis)
        self.logger.debug(f"Axis {axis.name} calibration tolerance {tolerance:.5f} mm, mm per axis unit {mm_axis}")

        offsets: List[float] = []
        for speed in self.settings.speeds:
            axis.backlash = AxisBacklashSettings(BacklashCompensationMethod.DIRECTIONAL,
                                                 Length(0.0, LengthUnit.MILLIMETERS), 1.0)
            offset = 0.0
            for i in range(self.settings.calibration_passes):
                self._check_cancelled()
                move_to_location_at_safe_z(movable, self.displaced_axis_location(
                    movable, axis, location, -self.settings.test_move_mm * mm_axis))
                movable.move_to(location, speed)
                effective0 = self.locator.detected_location(camera, location, diameter)

                move_to_location_at_safe_z(movable, self.displaced_axis_location(
                    movable, axis, location, self.settings.test_move_mm * mm_axis))
                movable.move_to(location, speed)
                effective1 = self.locator.detected_location(camera, location, diameter)

                mm_error = effective1.subtract(effective0).convert_to_units(LengthUnit.MILLIMETERS) \
                    .dot_product(unit).value
                if movable is camera:
                    # The subject's displacement is negative if the camera moves.
                    mm_error = -mm_error

                step = backlash_pass_step(offset, mm_error, mm_axis, self.settings.error_dampening,
                                          tolerance, i == 0)
                offset = step.offset
                self.logger.debug(f"Speed {speed}, pass {i}: error {mm_error:.5f} mm, offset {offset:.5f} mm")
                if step.apply:
                    axis.backlash.offset = Length(offset, LengthUnit.MILLIMETERS).convert_to_units(axis.driver_units)
                if step.done:
                    break
            offsets.append(offset)

        return select_backlash_compensation(offsets, self.settings.speeds, tolerance,
                                            self.settings.one_sided_safety_factor, axis.name)
