"""
Calibration Configuration

Loads the calibration settings from a JSON file with the sections
`nozzle_calibration`, `bottom_vision`, `backlash` and `logging`. Missing
keys keep their defaults, unknown keys are ignored.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from .axis_backlash_calibrator import BacklashCalibrationSettings
from .bottom_vision_aligner import (
    BottomVisionAlignerSettings,
    BottomVisionSettings,
    MaxRotation,
    PartSizeCheckMethod,
    PreRotateUsage,
)
from .exceptions import ConfigurationError
from .geometry import Length, LengthUnit, Location
from .nozzle_runout_calibrator import NozzleCalibrationSettings, RecalibrationTrigger
from .runout_compensation import RunoutCompensationAlgorithm


def _length(value: Any, default: Length) -> Length:
    """Accept a plain number (mm) or {"value": v, "units": "mm"}."""
    if value is None:
        return default
    if isinstance(value, dict):
        return Length(float(value.get('value', default.value)),
                      LengthUnit.from_name(value.get('units', default.units.short_name)))
    return Length(float(value), LengthUnit.MILLIMETERS)


def _length_dict(length: Length) -> Dict[str, Any]:
    return {'value': length.value, 'units': length.units.short_name}


@dataclass
class LoggingSettings:
    level: str = 'INFO'
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class CalibrationConfig:
    """Configuration for the calibration system."""
    nozzle_calibration: NozzleCalibrationSettings = field(default_factory=NozzleCalibrationSettings)
    bottom_vision: BottomVisionAlignerSettings = field(default_factory=BottomVisionAlignerSettings)
    part_vision: BottomVisionSettings = field(default_factory=BottomVisionSettings)
    backlash: BacklashCalibrationSettings = field(default_factory=BacklashCalibrationSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_json(cls, config_file: str) -> 'CalibrationConfig':
        """
        Load configuration from JSON file.

        Args:
            config_file: Path to JSON configuration file

        Returns:
            CalibrationConfig instance

        Raises:
            ConfigurationError: If the file cannot be read or holds invalid settings
        """
        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {config_file}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {config_file}: {e}") from e
        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> 'CalibrationConfig':
        config = cls()
        try:
            cls._update_nozzle_calibration(config.nozzle_calibration, config_data.get('nozzle_calibration', {}))
            cls._update_bottom_vision(config, config_data.get('bottom_vision', {}))

            backlash_config = config_data.get('backlash', {})
            backlash = config.backlash
            backlash.calibration_passes = int(backlash_config.get('calibration_passes', backlash.calibration_passes))
            backlash.error_dampening = float(backlash_config.get('error_dampening', backlash.error_dampening))
            backlash.test_move_mm = float(backlash_config.get('test_move_mm', backlash.test_move_mm))
            backlash.one_sided_safety_factor = float(
                backlash_config.get('one_sided_safety_factor', backlash.one_sided_safety_factor))
            backlash.speeds = tuple(float(s) for s in backlash_config.get('speeds', backlash.speeds))

            logging_config = config_data.get('logging', {})
            config.logging.level = str(logging_config.get('level', config.logging.level)).upper()
            config.logging.format = logging_config.get('format', config.logging.format)
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Invalid calibration configuration: {e}") from e

        config.validate()
        return config

    @staticmethod
    def _update_nozzle_calibration(nozzle: NozzleCalibrationSettings, nozzle_config: Dict[str, Any]):
        nozzle.enabled = bool(nozzle_config.get('enabled', nozzle.enabled))
        nozzle.angle_subdivisions = int(nozzle_config.get('angle_subdivisions', nozzle.angle_subdivisions))
        nozzle.allow_misdetections = int(nozzle_config.get('allow_misdetections', nozzle.allow_misdetections))
        nozzle.angle_start = float(nozzle_config.get('angle_start', nozzle.angle_start))
        nozzle.angle_stop = float(nozzle_config.get('angle_stop', nozzle.angle_stop))
        nozzle.excenter_ratio = float(nozzle_config.get('excenter_ratio', nozzle.excenter_ratio))
        nozzle.offset_threshold = _length(nozzle_config.get('offset_threshold'), nozzle.offset_threshold)
        nozzle.calibration_z_offset = _length(nozzle_config.get('calibration_z_offset'),
                                              nozzle.calibration_z_offset)
        nozzle.algorithm = RunoutCompensationAlgorithm(nozzle_config.get('algorithm', nozzle.algorithm.value))
        nozzle.recalibration_trigger = RecalibrationTrigger(
            nozzle_config.get('recalibration_trigger', nozzle.recalibration_trigger.value))
        nozzle.reset_on_unload = bool(nozzle_config.get('reset_on_unload', nozzle.reset_on_unload))

    @staticmethod
    def _update_bottom_vision(config: 'CalibrationConfig', vision_config: Dict[str, Any]):
        aligner = config.bottom_vision
        aligner.enabled = bool(vision_config.get('enabled', aligner.enabled))
        aligner.pre_rotate = bool(vision_config.get('pre_rotate', aligner.pre_rotate))
        aligner.max_vision_passes = int(vision_config.get('max_vision_passes', aligner.max_vision_passes))
        aligner.max_linear_offset = _length(vision_config.get('max_linear_offset'), aligner.max_linear_offset)
        aligner.max_angular_offset = float(vision_config.get('max_angular_offset', aligner.max_angular_offset))

        part_config = vision_config.get('part_defaults', {})
        part = config.part_vision
        part.enabled = bool(part_config.get('enabled', part.enabled))
        part.pre_rotate_usage = PreRotateUsage(part_config.get('pre_rotate_usage', part.pre_rotate_usage.value))
        part.max_rotation = MaxRotation(part_config.get('max_rotation', part.max_rotation.value))
        part.check_part_size_method = PartSizeCheckMethod(
            part_config.get('check_part_size_method', part.check_part_size_method.value))
        part.check_size_tolerance_percent = int(
            part_config.get('check_size_tolerance_percent', part.check_size_tolerance_percent))
        if 'vision_offset' in part_config:
            part.vision_offset = Location.from_dict(part_config['vision_offset']).derive(z=0.0, rotation=0.0)

    def validate(self):
        """
        Check value ranges.

        Raises:
            ConfigurationError: On the first invalid value
        """
        nozzle = self.nozzle_calibration
        if nozzle.angle_subdivisions < 2:
            raise ConfigurationError(f"angle_subdivisions must be at least 2, got {nozzle.angle_subdivisions}")
        if nozzle.allow_misdetections < 0:
            raise ConfigurationError(f"allow_misdetections must not be negative, got {nozzle.allow_misdetections}")
        if nozzle.angle_stop <= nozzle.angle_start:
            raise ConfigurationError(
                f"angle_stop ({nozzle.angle_stop}) must be greater than angle_start ({nozzle.angle_start})")
        if not 0.0 <= nozzle.excenter_ratio <= 0.5:
            raise ConfigurationError(f"excenter_ratio must be within [0, 0.5], got {nozzle.excenter_ratio}")
        if nozzle.offset_threshold.value <= 0:
            raise ConfigurationError("offset_threshold must be positive")

        vision = self.bottom_vision
        if vision.max_vision_passes < 1:
            raise ConfigurationError(f"max_vision_passes must be at least 1, got {vision.max_vision_passes}")
        if vision.max_linear_offset.value <= 0 or vision.max_angular_offset <= 0:
            raise ConfigurationError("max_linear_offset and max_angular_offset must be positive")
        if not 0 <= self.part_vision.check_size_tolerance_percent <= 100:
            raise ConfigurationError("check_size_tolerance_percent must be within [0, 100]")

        backlash = self.backlash
        if backlash.calibration_passes < 1:
            raise ConfigurationError(f"calibration_passes must be at least 1, got {backlash.calibration_passes}")
        if not 0.0 < backlash.error_dampening <= 1.0:
            raise ConfigurationError(f"error_dampening must be within (0, 1], got {backlash.error_dampening}")
        if not backlash.speeds or list(backlash.speeds) != sorted(backlash.speeds):
            raise ConfigurationError(f"speeds must be a non-empty ascending sequence, got {backlash.speeds}")

        if not isinstance(logging.getLevelName(self.logging.level), int):
            raise ConfigurationError(f"Unknown logging level {self.logging.level}")

    def to_dict(self) -> Dict[str, Any]:
        nozzle = self.nozzle_calibration
        vision = self.bottom_vision
        part = self.part_vision
        backlash = self.backlash
        return {
            'nozzle_calibration': {
                'enabled': nozzle.enabled,
                'angle_subdivisions': nozzle.angle_subdivisions,
                'allow_misdetections': nozzle.allow_misdetections,
                'angle_start': nozzle.angle_start,
                'angle_stop': nozzle.angle_stop,
                'excenter_ratio': nozzle.excenter_ratio,
                'offset_threshold': _length_dict(nozzle.offset_threshold),
                'calibration_z_offset': _length_dict(nozzle.calibration_z_offset),
                'algorithm': nozzle.algorithm.value,
                'recalibration_trigger': nozzle.recalibration_trigger.value,
                'reset_on_unload': nozzle.reset_on_unload,
            },
            'bottom_vision': {
                'enabled': vision.enabled,
                'pre_rotate': vision.pre_rotate,
                'max_vision_passes': vision.max_vision_passes,
                'max_linear_offset': _length_dict(vision.max_linear_offset),
                'max_angular_offset': vision.max_angular_offset,
                'part_defaults': {
                    'enabled': part.enabled,
                    'pre_rotate_usage': part.pre_rotate_usage.value,
                    'max_rotation': part.max_rotation.value,
                    'check_part_size_method': part.check_part_size_method.value,
                    'check_size_tolerance_percent': part.check_size_tolerance_percent,
                    'vision_offset': part.vision_offset.to_dict(),
                },
            },
            'backlash': {
                'calibration_passes': backlash.calibration_passes,
                'error_dampening': backlash.error_dampening,
                'test_move_mm': backlash.test_move_mm,
                'one_sided_safety_factor': backlash.one_sided_safety_factor,
                'speeds': list(backlash.speeds),
            },
            'logging': {
                'level': self.logging.level,
                'format': self.logging.format,
            },
        }

    def save(self, config_file: str):
        with open(config_file, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
