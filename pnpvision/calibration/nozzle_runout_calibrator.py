"""
Nozzle Tip Runout Calibration

Rotates the nozzle over the bottom camera, detects the tip at each angle and
fits a runout compensation model to the measured offsets. In camera
calibration mode the nozzle orbits eccentrically instead, and the fitted
center and phase shift correct the camera's mounting position and rotation.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .exceptions import (
    CalibrationCancelledError,
    CalibrationDisabledError,
    CalibrationError,
    InsufficientVisionResultsError,
    MachineNotHomedError,
    MissingCameraError,
    ToolMismatchError,
    VisionError,
)
from .geometry import Length, LengthUnit, Location
from .machine import Camera, Machine, Nozzle, NozzleTip, VisionPipeline, move_to_location_at_safe_z
from .runout_compensation import (
    ModelBasedRunoutCompensation,
    RunoutCompensationAlgorithm,
    RunoutCompensationTable,
    create_runout_compensation,
)
from .vision_utils import Circle, KeyPoint, RotatedRect, location_pixels, pixel_center_offsets, result_center


class RecalibrationTrigger(Enum):
    NOZZLE_TIP_CHANGE = "NozzleTipChange"
    NOZZLE_TIP_CHANGE_IN_JOB = "NozzleTipChangeInJob"
    MACHINE_HOME = "MachineHome"
    MANUAL = "Manual"


@dataclass
class NozzleCalibrationSettings:
    """Settings for the nozzle tip runout calibration."""
    enabled: bool = True
    angle_subdivisions: int = 6
    allow_misdetections: int = 0
    angle_start: float = -180.0
    angle_stop: float = 180.0
    # Excenter radius as a ratio of the camera minimum dimension
    excenter_ratio: float = 0.25
    # Results farther away from the expected location are dropped
    offset_threshold: Length = field(default_factory=lambda: Length(0.5, LengthUnit.MILLIMETERS))
    calibration_z_offset: Length = field(default_factory=lambda: Length(0.0, LengthUnit.MILLIMETERS))
    algorithm: RunoutCompensationAlgorithm = RunoutCompensationAlgorithm.MODEL
    recalibration_trigger: RecalibrationTrigger = RecalibrationTrigger.NOZZLE_TIP_CHANGE_IN_JOB
    reset_on_unload: bool = False


def calibration_key(nozzle: Nozzle, nozzle_tip: Optional[NozzleTip] = None) -> str:
    """Table key for the given nozzle tip, by default the one currently on the nozzle."""
    tip = nozzle_tip if nozzle_tip is not None else nozzle.nozzle_tip
    if tip is None:
        return nozzle.id
    return f"{tip.id}@{nozzle.id}"


class NozzleRunoutCalibrator:
    """
    Calibrates nozzle tip runout using the bottom camera.

    The compensation models are stored in the given RunoutCompensationTable,
    one per nozzle tip / nozzle combination.
    """

    def __init__(self,
                 settings: NozzleCalibrationSettings,
                 table: RunoutCompensationTable,
                 machine: Machine,
                 pipeline: VisionPipeline,
                 cancel_check: Optional[Callable[[], bool]] = None):
        """
        Initialize the calibrator.

        Args:
            settings: Calibration settings
            table: Per-tool compensation table to read and update
            machine: Machine providing the bottom camera and homing state
            pipeline: Vision pipeline detecting the nozzle tip
            cancel_check: Optional callable returning True when the run should stop
        """
        self.settings = settings
        self.table = table
        self.machine = machine
        self.pipeline = pipeline
        self.cancel_check = cancel_check
        self.logger = logging.getLogger(__name__)
        self._calibrating = False

    def is_enabled(self) -> bool:
        return self.settings.enabled

    def is_calibrating(self) -> bool:
        return self._calibrating

    def is_calibrated(self, nozzle: Optional[Nozzle]) -> bool:
        return nozzle is not None and self.table.is_calibrated(calibration_key(nozzle))

    def get_runout_compensation(self, nozzle: Optional[Nozzle]):
        if nozzle is None:
            return None
        return self.table.get(calibration_key(nozzle))

    def reset(self, nozzle: Nozzle, nozzle_tip: Optional[NozzleTip] = None):
        """Reset the runout compensation of the tip, by default the one currently on the nozzle."""
        self.table.reset(calibration_key(nozzle, nozzle_tip))

    def reset_all(self):
        self.table.reset_all()

    def runout_compensation_information(self, nozzle: Nozzle) -> str:
        if self.is_calibrated(nozzle):
            return self.get_runout_compensation(nozzle).describe()
        return "Uncalibrated"

    def get_calibrated_offset(self, nozzle: Nozzle, angle: float) -> Location:
        """Runout offset to apply when moving the nozzle to the given angle."""
        if not self.is_enabled() or not self.is_calibrated(nozzle):
            return Location(LengthUnit.MILLIMETERS)
        return self.get_runout_compensation(nozzle).offset(angle)

    def get_calibrated_camera_offset(self, nozzle: Nozzle, camera: Camera) -> Location:
        """Tool specific offset of the bottom camera, as determined by the runout model."""
        if camera is not None and camera is self.machine.bottom_camera:
            if self.is_enabled() and self.is_calibrated(nozzle):
                return self.get_runout_compensation(nozzle).camera_offset()
        return Location(LengthUnit.MILLIMETERS)

    def is_recalibrate_on_tip_change_in_job_needed(self, nozzle: Nozzle) -> bool:
        return self.settings.recalibration_trigger is RecalibrationTrigger.NOZZLE_TIP_CHANGE_IN_JOB

    def is_recalibrate_on_tip_change_needed(self, nozzle: Nozzle) -> bool:
        trigger = self.settings.recalibration_trigger
        return (trigger is RecalibrationTrigger.NOZZLE_TIP_CHANGE
                or (trigger is RecalibrationTrigger.MACHINE_HOME and not self.is_calibrated(nozzle)))

    def is_recalibrate_on_home_needed(self, nozzle: Nozzle) -> bool:
        return self.settings.recalibration_trigger in (
            RecalibrationTrigger.NOZZLE_TIP_CHANGE, RecalibrationTrigger.MACHINE_HOME)

    def _check_cancelled(self):
        if self.cancel_check is not None and self.cancel_check():
            raise CalibrationCancelledError("Nozzle tip calibration cancelled")

    def _check_preconditions(self, nozzle: Optional[Nozzle], homing: bool,
                             nozzle_tip: Optional[NozzleTip]) -> Camera:
        if not self.is_enabled():
            raise CalibrationDisabledError("Nozzle tip calibration is disabled")
        if not (homing or self.machine.is_homed()):
            raise MachineNotHomedError("Machine not yet homed, nozzle tip calibration request aborted")
        loaded = nozzle.nozzle_tip if nozzle is not None else None
        target = nozzle_tip if nozzle_tip is not None else loaded
        if nozzle is None or loaded is None or target is None or loaded.id != target.id:
            if target is not None and target.unloaded_standin:
                raise ToolMismatchError("Please unload the nozzle tip on the current nozzle first.")
            raise ToolMismatchError("Please load the selected nozzle tip on the current nozzle first.")
        camera = self.machine.bottom_camera
        if camera is None:
            raise MissingCameraError("No bottom vision camera available for nozzle tip calibration")
        return camera

    @contextmanager
    def _calibration_session(self, nozzle: Nozzle, camera: Camera, base_z: float):
        self._calibrating = True
        try:
            yield
        finally:
            try:
                # Back to the (now offset corrected) camera center.
                nozzle.move_to(camera.location_for(nozzle).derive(z=base_z, rotation=self.settings.angle_stop))
                nozzle.move_to_safe_z()
            finally:
                self._calibrating = False

    def calibrate(self, nozzle: Nozzle, homing: bool = False, calibrate_camera: bool = False,
                  nozzle_tip: Optional[NozzleTip] = None):
        """
        Run the runout calibration sweep.

        Args:
            nozzle: Nozzle carrying the tip to calibrate
            homing: True while homing is in progress
            calibrate_camera: Calibrate the bottom camera position and rotation
                instead of the nozzle tip
            nozzle_tip: Calibration target; defaults to the tip on the nozzle

        Raises:
            PreconditionError: Before any motion, if the calibration cannot start
            InsufficientVisionResultsError: If too few tip detections succeeded
        """
        camera = self._check_preconditions(nozzle, homing, nozzle_tip)
        if calibrate_camera and not self.is_calibrated(nozzle):
            raise CalibrationError("Calibrate the nozzle tip first.")

        # Baseline without the tool specific camera offset, which is what we are looking for.
        z_offset = self.settings.calibration_z_offset
        base_location = camera.location.derive(rotation=0.0).add(
            Location(z_offset.units, 0.0, 0.0, z_offset.value, 0.0))

        with self._calibration_session(nozzle, camera, base_location.z):
            excenter = Location(base_location.units)
            if not calibrate_camera:
                self.reset(nozzle)
            else:
                excenter = pixel_center_offsets(
                    camera,
                    camera.width / 2 + min(camera.width, camera.height) * self.settings.excenter_ratio,
                    camera.height / 2)

            samples = self._sweep(nozzle, camera, base_location, excenter)

            if not calibrate_camera:
                model = create_runout_compensation(self.settings.algorithm, samples)
                self.table.set(calibration_key(nozzle), model)
                self.logger.info(f"Nozzle tip {calibration_key(nozzle)} calibrated: {model.describe()}")
            else:
                self._apply_camera_calibration(camera, samples)

    def _sweep(self, nozzle: Nozzle, camera: Camera, base_location: Location,
               excenter: Location) -> List[Location]:
        angle_start = self.settings.angle_start
        angle_stop = self.settings.angle_stop
        move_to_location_at_safe_z(nozzle, base_location.derive(rotation=angle_start))

        angle_increment = (angle_stop - angle_start) / self.settings.angle_subdivisions
        subdivisions = self.settings.angle_subdivisions
        if abs(angle_start + 360.0 - angle_stop) < 0.1:
            # Full circle, the last measurement would duplicate the first.
            subdivisions -= 1

        self.logger.debug(
            f"Starting measurement: start {angle_start}, stop {angle_stop}, "
            f"increment {angle_increment}, subdivisions {subdivisions}"
        )

        samples = []
        for i in range(subdivisions + 1):
            self._check_cancelled()
            angle = angle_start + i * angle_increment
            measure_location = base_location.derive(rotation=angle).add(excenter.rotate_xy(angle))
            nozzle.move_to(measure_location)

            offset = self.find_circle(camera, measure_location)
            if offset is not None:
                offset = offset.derive(rotation=angle)
                samples.append(offset)
                self.logger.debug(f"Step {i}, angle {angle:.2f}: measured offset {offset}")
            else:
                self.logger.debug(f"Step {i}, angle {angle:.2f}: no fix")

        required = max(3, subdivisions + 1 - self.settings.allow_misdetections)
        if len(samples) < required:
            raise InsufficientVisionResultsError(
                f"Not enough results from vision ({len(samples)} of {required} required). "
                f"Check pipeline and threshold.")
        return samples

    def _apply_camera_calibration(self, camera: Camera, samples: List[Location]):
        model = ModelBasedRunoutCompensation(samples, RunoutCompensationAlgorithm.MODEL)
        head_offsets = camera.head_offsets.subtract(model.axis_offset())
        self.logger.info(
            f"Applying axis offset to bottom camera position: {camera.head_offsets} - "
            f"{model.axis_offset()} = {head_offsets}")
        camera.head_offsets = head_offsets

        rotation = camera.rotation - model.phase_shift
        self.logger.info(
            f"Applying angle offset to bottom camera rotation: {camera.rotation:.4f} - "
            f"{model.phase_shift:.4f} = {rotation:.4f}")
        camera.rotation = rotation

    def find_circle(self, camera: Camera, measure_location: Location) -> Optional[Location]:
        """
        Detect the nozzle tip and return its offset from the camera center.

        Returns:
            The offset of the first result within the offset threshold, or None
            if the pipeline found nothing usable
        """
        center = location_pixels(camera, measure_location)
        results = self.pipeline.process(camera, center=center)

        if isinstance(results, Exception):
            raise results
        if results is None:
            return None
        if not isinstance(results, (list, tuple)):
            results = [results]

        locations = []
        for result in results:
            if not isinstance(result, (Circle, KeyPoint, RotatedRect)):
                raise VisionError(f"Unrecognized result {result!r}")
            x, y = result_center(result)
            locations.append(pixel_center_offsets(camera, x, y))

        valid = []
        for location in locations:
            expected = measure_location.convert_to_units(location.units).subtract(camera.location)
            threshold = self.settings.offset_threshold.convert_to_units(location.units).value
            distance = location.linear_distance_to(expected)
            if distance > threshold:
                self.logger.warning(
                    f"Removed offset location {location} from results; distance {distance:.4f} "
                    f"exceeds offset threshold {threshold:.4f}")
            else:
                valid.append(location)

        if not valid:
            return None
        if len(valid) > 1:
            self.logger.info(
                f"Got {len(valid)} results from pipeline, taking the first. "
                f"Tune the pipeline to return exactly one result.")
        return valid[0]
