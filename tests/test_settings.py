"""
Tests for loading and validating the calibration configuration.
"""

import json
import os

import pytest

from pnpvision.calibration.bottom_vision_aligner import PartSizeCheckMethod, PreRotateUsage
from pnpvision.calibration.exceptions import ConfigurationError
from pnpvision.calibration.geometry import Length, LengthUnit
from pnpvision.calibration.nozzle_runout_calibrator import RecalibrationTrigger
from pnpvision.calibration.runout_compensation import RunoutCompensationAlgorithm
from pnpvision.calibration.settings import CalibrationConfig


class TestCalibrationConfig:

    def test_defaults(self):
        config = CalibrationConfig()
        config.validate()
        assert config.nozzle_calibration.angle_subdivisions == 6
        assert config.nozzle_calibration.algorithm is RunoutCompensationAlgorithm.MODEL
        assert config.bottom_vision.max_vision_passes == 3
        assert config.backlash.speeds == (0.25, 0.5, 0.75, 1.0)
        assert config.logging.level == 'INFO'

    def test_from_json(self, tmp_path):
        """Test values from the file override the defaults, missing keys keep them."""
        config_file = tmp_path / "calibration.json"
        config_file.write_text(json.dumps({
            'nozzle_calibration': {
                'angle_subdivisions': 8,
                'algorithm': 'Table',
                'offset_threshold': {'value': 0.05, 'units': 'cm'},
                'recalibration_trigger': 'MachineHome',
            },
            'bottom_vision': {
                'pre_rotate': True,
                'max_linear_offset': 0.5,
                'part_defaults': {
                    'pre_rotate_usage': 'AlwaysOff',
                    'check_part_size_method': 'PadExtents',
                    'vision_offset': {'x': 0.1, 'y': -0.1, 'z': 3.0, 'rotation': 90.0},
                },
            },
            'backlash': {'speeds': [0.5, 1.0]},
            'logging': {'level': 'debug'},
        }))
        config = CalibrationConfig.from_json(str(config_file))

        nozzle = config.nozzle_calibration
        assert nozzle.angle_subdivisions == 8
        assert nozzle.allow_misdetections == 0
        assert nozzle.algorithm is RunoutCompensationAlgorithm.TABLE
        assert nozzle.offset_threshold == Length(0.05, LengthUnit.CENTIMETERS)
        assert nozzle.recalibration_trigger is RecalibrationTrigger.MACHINE_HOME

        assert config.bottom_vision.pre_rotate
        assert config.bottom_vision.max_linear_offset == Length(0.5, LengthUnit.MILLIMETERS)
        part = config.part_vision
        assert part.pre_rotate_usage is PreRotateUsage.ALWAYS_OFF
        assert part.check_part_size_method is PartSizeCheckMethod.PAD_EXTENTS
        assert part.vision_offset.x == pytest.approx(0.1)
        assert part.vision_offset.z == 0.0
        assert part.vision_offset.rotation == 0.0

        assert config.backlash.speeds == (0.5, 1.0)
        assert config.logging.level == 'DEBUG'

    def test_invalid_json(self, tmp_path):
        config_file = tmp_path / "broken.json"
        config_file.write_text("{ not json")
        with pytest.raises(ConfigurationError):
            CalibrationConfig.from_json(str(config_file))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            CalibrationConfig.from_json(str(tmp_path / "missing.json"))

    def test_unreadable_path(self, tmp_path):
        """Test a directory in place of the file is reported as a configuration error."""
        with pytest.raises(ConfigurationError):
            CalibrationConfig.from_json(str(tmp_path))

    @pytest.mark.parametrize("data", [
        {'nozzle_calibration': {'algorithm': 'Spline'}},
        {'nozzle_calibration': {'angle_subdivisions': 'many'}},
        {'nozzle_calibration': {'angle_subdivisions': 1}},
        {'nozzle_calibration': {'angle_start': 90, 'angle_stop': 0}},
        {'nozzle_calibration': {'excenter_ratio': 0.8}},
        {'nozzle_calibration': {'offset_threshold': {'value': 1, 'units': 'furlong'}}},
        {'bottom_vision': {'max_vision_passes': 0}},
        {'bottom_vision': {'part_defaults': {'max_rotation': 'Half'}}},
        {'backlash': {'speeds': [1.0, 0.5]}},
        {'backlash': {'error_dampening': 0}},
        {'logging': {'level': 'LOUD'}},
    ])
    def test_invalid_values(self, data):
        with pytest.raises(ConfigurationError):
            CalibrationConfig.from_dict(data)

    def test_round_trip(self, tmp_path):
        config = CalibrationConfig.from_dict({
            'nozzle_calibration': {'algorithm': 'ModelCameraOffset', 'reset_on_unload': True},
            'bottom_vision': {'max_angular_offset': 5.0},
        })
        config_file = tmp_path / "saved.json"
        config.save(str(config_file))
        restored = CalibrationConfig.from_json(str(config_file))
        assert restored.to_dict() == config.to_dict()
        assert restored.nozzle_calibration.algorithm is RunoutCompensationAlgorithm.MODEL_CAMERA_OFFSET
        assert restored.nozzle_calibration.reset_on_unload

    def test_sample_config_is_valid(self):
        config_file = os.path.join(os.path.dirname(__file__), '..', 'config', 'calibration_config.json')
        config = CalibrationConfig.from_json(config_file)
        assert config.bottom_vision.pre_rotate
        assert config.part_vision.check_part_size_method is PartSizeCheckMethod.BODY_SIZE


if __name__ == "__main__":
    pytest.main([__file__])
