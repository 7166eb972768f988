"""
Calibration System Main Module

Coordinates nozzle tip runout calibration, bottom vision part alignment and
axis backlash calibration for one machine, and owns the per-tool runout
compensation table they share.
"""

import logging
from typing import Any, Callable, Dict, Optional

from .axis_backlash_calibrator import AxisBacklashCalibrator
from .bottom_vision_aligner import BottomVisionAligner, Part, PartAlignmentOffset
from .exceptions import MissingCameraError
from .geometry import Location
from .machine import (
    AxisBacklashSettings,
    Camera,
    ControllerAxis,
    FiducialLocator,
    Head,
    Machine,
    Movable,
    Nozzle,
    NozzleTip,
    VisionPipeline,
)
from .nozzle_runout_calibrator import NozzleRunoutCalibrator
from .runout_compensation import RunoutCompensationTable
from .settings import CalibrationConfig


class CalibrationSystem:
    """
    Main calibration system that coordinates all calibrators.
    """

    def __init__(self,
                 config: CalibrationConfig,
                 machine: Machine,
                 nozzle_pipeline: VisionPipeline,
                 part_pipeline: Optional[VisionPipeline] = None,
                 fiducial_locator: Optional[FiducialLocator] = None,
                 table: Optional[RunoutCompensationTable] = None,
                 cancel_check: Optional[Callable[[], bool]] = None):
        """
        Initialize the calibration system.

        Args:
            config: Calibration configuration
            machine: Machine providing homing state and the bottom camera
            nozzle_pipeline: Pipeline detecting the nozzle tip
            part_pipeline: Pipeline detecting the part outline for bottom vision
            fiducial_locator: Fiducial detection used by backlash calibration
            table: Existing runout compensation table, e.g. restored from disk
            cancel_check: Optional callable returning True to cancel a running calibration
        """
        self.config = config
        self.machine = machine
        self.logger = logging.getLogger(__name__)

        self.table = table if table is not None else RunoutCompensationTable()
        self.nozzle_calibrator = NozzleRunoutCalibrator(
            config.nozzle_calibration, self.table, machine, nozzle_pipeline, cancel_check)
        self.aligner = None
        if part_pipeline is not None:
            self.aligner = BottomVisionAligner(config.bottom_vision, machine, part_pipeline, config.part_vision)
        self.backlash_calibrator = None
        if fiducial_locator is not None:
            self.backlash_calibrator = AxisBacklashCalibrator(config.backlash, fiducial_locator, cancel_check)

        self.system_statistics = {
            'nozzle_calibrations': 0,
            'camera_calibrations': 0,
            'calibration_failures': 0,
            'alignments': 0,
            'alignment_failures': 0,
            'backlash_calibrations': 0,
            'backlash_failures': 0,
        }

        self.logger.info("Calibration system initialized")

    def calibrate_nozzle(self, nozzle: Nozzle, homing: bool = False,
                         nozzle_tip: Optional[NozzleTip] = None):
        try:
            self.nozzle_calibrator.calibrate(nozzle, homing=homing, nozzle_tip=nozzle_tip)
        except Exception:
            self.system_statistics['calibration_failures'] += 1
            raise
        self.system_statistics['nozzle_calibrations'] += 1

    def calibrate_camera(self, nozzle: Nozzle):
        """Correct the bottom camera position and rotation using a calibrated nozzle tip."""
        try:
            self.nozzle_calibrator.calibrate(nozzle, calibrate_camera=True)
        except Exception:
            self.system_statistics['calibration_failures'] += 1
            raise
        self.system_statistics['camera_calibrations'] += 1

    def align_part(self, part: Part, placement_location: Location, nozzle: Nozzle,
                   board_rotation: Optional[float] = None) -> PartAlignmentOffset:
        if self.aligner is None:
            raise MissingCameraError("No part alignment pipeline configured")
        try:
            offset = self.aligner.find_offsets(part, placement_location, nozzle, board_rotation)
        except Exception:
            self.system_statistics['alignment_failures'] += 1
            raise
        self.system_statistics['alignments'] += 1
        return offset

    def calibrate_backlash(self, head: Head, camera: Camera, movable: Movable,
                           axis: ControllerAxis) -> AxisBacklashSettings:
        if self.backlash_calibrator is None:
            raise MissingCameraError("No fiducial locator configured for backlash calibration")
        try:
            settings = self.backlash_calibrator.calibrate_axis_backlash(head, camera, movable, axis)
        except Exception:
            self.system_statistics['backlash_failures'] += 1
            raise
        self.system_statistics['backlash_calibrations'] += 1
        return settings

    def get_calibrated_offset(self, nozzle: Nozzle, angle: float) -> Location:
        return self.nozzle_calibrator.get_calibrated_offset(nozzle, angle)

    def get_calibrated_camera_offset(self, nozzle: Nozzle, camera: Camera) -> Location:
        return self.nozzle_calibrator.get_calibrated_camera_offset(nozzle, camera)

    def on_machine_geometry_changed(self):
        """All runout compensations become invalid when the machine geometry changes."""
        self.logger.info("Machine geometry changed, resetting all nozzle tip calibrations")
        self.nozzle_calibrator.reset_all()

    def on_machine_homed(self, nozzle: Nozzle):
        if self.nozzle_calibrator.is_recalibrate_on_home_needed(nozzle):
            self.calibrate_nozzle(nozzle, homing=True)

    def on_nozzle_tip_loaded(self, nozzle: Nozzle, in_job: bool = False):
        calibrator = self.nozzle_calibrator
        if calibrator.is_recalibrate_on_tip_change_needed(nozzle) or (
                in_job and calibrator.is_recalibrate_on_tip_change_in_job_needed(nozzle)):
            self.calibrate_nozzle(nozzle)

    def on_nozzle_tip_unloaded(self, nozzle: Nozzle, nozzle_tip: NozzleTip):
        if self.config.nozzle_calibration.reset_on_unload:
            self.nozzle_calibrator.reset(nozzle, nozzle_tip)

    def get_system_status(self) -> Dict[str, Any]:
        """Get current system status."""
        return {
            'calibrating': self.nozzle_calibrator.is_calibrating(),
            'calibrated_tools': self.table.tool_ids(),
            'bottom_camera': self.machine.bottom_camera.name if self.machine.bottom_camera else None,
            'homed': self.machine.is_homed(),
            'statistics': self.system_statistics.copy(),
        }
