"""
PnP Vision - Calibration Module

This package contains the core calibration and alignment functionality including:
- Calibration system coordination
- Nozzle tip runout calibration and compensation
- Bottom vision part alignment
- Axis backlash calibration
- Circular symmetry detection and circle fitting
"""

from .calibration_system import CalibrationSystem
from .settings import CalibrationConfig
from .geometry import Length, LengthUnit, Location, angle_norm, normalize_angle_180
from .circle_fit import CircleFit, kasa_circle_fit
from .circular_symmetry import CircularSymmetryDetector, find_circular_symmetry
from .runout_compensation import (
    ModelBasedRunoutCompensation,
    RunoutCompensationAlgorithm,
    RunoutCompensationTable,
    TableBasedRunoutCompensation,
    create_runout_compensation,
    runout_compensation_from_dict,
)
from .nozzle_runout_calibrator import NozzleCalibrationSettings, NozzleRunoutCalibrator, RecalibrationTrigger
from .bottom_vision_aligner import (
    BottomVisionAligner,
    BottomVisionAlignerSettings,
    BottomVisionSettings,
    Footprint,
    Part,
    PartAlignmentOffset,
    evaluate_pass,
)
from .axis_backlash_calibrator import (
    AxisBacklashCalibrator,
    BacklashCalibrationSettings,
    axis_calibration_tolerance,
    backlash_pass_step,
    select_backlash_compensation,
)
from .machine import AxisBacklashSettings, BacklashCompensationMethod, ControllerAxis, Head, NozzleTip

__all__ = [
    'CalibrationSystem',
    'CalibrationConfig',
    'Length',
    'LengthUnit',
    'Location',
    'angle_norm',
    'normalize_angle_180',
    'CircleFit',
    'kasa_circle_fit',
    'CircularSymmetryDetector',
    'find_circular_symmetry',
    'ModelBasedRunoutCompensation',
    'RunoutCompensationAlgorithm',
    'RunoutCompensationTable',
    'TableBasedRunoutCompensation',
    'create_runout_compensation',
    'runout_compensation_from_dict',
    'NozzleCalibrationSettings',
    'NozzleRunoutCalibrator',
    'RecalibrationTrigger',
    'BottomVisionAligner',
    'BottomVisionAlignerSettings',
    'BottomVisionSettings',
    'Footprint',
    'Part',
    'PartAlignmentOffset',
    'evaluate_pass',
    'AxisBacklashCalibrator',
    'BacklashCalibrationSettings',
    'axis_calibration_tolerance',
    'backlash_pass_step',
    'select_backlash_compensation',
    'AxisBacklashSettings',
    'BacklashCompensationMethod',
    'ControllerAxis',
    'Head',
    'NozzleTip',
]
