"""
Nozzle Tip Runout Compensation Models

A nozzle tip that is not perfectly concentric with its rotation axis traces
a circle when rotated. The calibration sweep measures the tip offset from
the camera center at several angles; the models below turn those samples
into an offset for any angle.

Variants:
- TABLE: linear interpolation between the measured samples
- MODEL: fitted circle, offset includes the axis offset (circle center)
- MODEL_NO_OFFSET: fitted circle, runout only
- MODEL_CAMERA_OFFSET: runout only, axis offset applied as a tool specific
  camera offset instead
"""

import logging
import math
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np

from .circle_fit import kasa_circle_fit
from .exceptions import CalibrationError, ConfigurationError
from .geometry import LengthUnit, Location, normalize_angle_180

logger = logging.getLogger(__name__)


class RunoutCompensationAlgorithm(Enum):
    MODEL = "Model"
    MODEL_NO_OFFSET = "ModelNoOffset"
    MODEL_CAMERA_OFFSET = "ModelCameraOffset"
    TABLE = "Table"


def _wrap_angle(angle: float) -> float:
    """Wrap into [-180, 180)."""
    angle = normalize_angle_180(angle)
    return -180.0 if angle == 180.0 else angle


def compute_phase_shift(samples: Sequence[Location], center_x: float, center_y: float) -> float:
    """
    Circular mean of the difference between commanded and measured angle.

    Args:
        samples: Measured offsets with the commanded angle in rotation
        center_x: Fitted circle center X, in the samples' units
        center_y: Fitted circle center Y, in the samples' units

    Returns:
        Phase shift in degrees, within (-180, 180]
    """
    differences = np.radians([
        sample.rotation - math.degrees(math.atan2(sample.y - center_y, sample.x - center_x))
        for sample in samples
    ])
    # Mean on the unit circle, differences near +-180 wrap to both signs.
    mean = math.atan2(float(np.mean(np.sin(differences))), float(np.mean(np.cos(differences))))
    phase_shift = normalize_angle_180(math.degrees(mean))
    logger.debug(f"Calculated phase shift: {phase_shift:.4f}")
    return phase_shift


class TableBasedRunoutCompensation:
    """Interpolates linearly between the measured offsets."""

    algorithm = RunoutCompensationAlgorithm.TABLE

    def __init__(self, samples: Sequence[Location]):
        if not samples:
            raise CalibrationError("Table based runout compensation needs at least one sample")
        units = samples[0].units
        normalized = [
            s.convert_to_units(units).derive(rotation=_wrap_angle(s.rotation))
            for s in samples
        ]
        self.samples: List[Location] = sorted(normalized, key=lambda s: s.rotation)
        self.units = units

    def _pair_for_angle(self, angle: float):
        """The two neighbouring samples around the angle, with the second angle unwrapped."""
        first = self.samples[0]
        last = self.samples[-1]
        if angle >= last.rotation:
            return last, first.rotation + 360.0, first, angle
        if angle < first.rotation:
            return last, first.rotation + 360.0, first, angle + 360.0
        for a, b in zip(self.samples, self.samples[1:]):
            if angle < b.rotation:
                return a, b.rotation, b, angle
        return last, first.rotation + 360.0, first, angle

    def offset(self, angle: float) -> Location:
        if len(self.samples) == 1:
            return self.samples[0].derive(z=0.0, rotation=0.0)
        a, b_angle, b, angle = self._pair_for_angle(_wrap_angle(angle))
        ratio = 1.0
        if b_angle != a.rotation:
            ratio = (angle - a.rotation) / (b_angle - a.rotation)
        x = a.x + (b.x - a.x) * ratio
        y = a.y + (b.y - a.y) * ratio
        return Location(self.units, x, y, 0.0, 0.0)

    def camera_offset(self) -> Location:
        return Location(self.units)

    def axis_offset(self) -> Optional[Location]:
        # not available with interpolation
        return None

    def describe(self) -> str:
        first = self.samples[0]
        return f"{int(first.rotation)}°-offset x={first.x:.6f}, y={first.y:.6f}"

    def to_dict(self) -> dict:
        return {
            'algorithm': self.algorithm.value,
            'samples': [s.to_dict() for s in self.samples],
        }

    def __str__(self) -> str:
        return self.describe()


class ModelBasedRunoutCompensation:
    """Circle model of the runout: center (axis offset), radius and phase shift."""

    def __init__(self, samples: Optional[Sequence[Location]] = None,
                 kind: RunoutCompensationAlgorithm = RunoutCompensationAlgorithm.MODEL):
        if kind is RunoutCompensationAlgorithm.TABLE:
            raise ValueError("Use TableBasedRunoutCompensation for the table algorithm")
        self.algorithm = kind
        self.center_x = 0.0
        self.center_y = 0.0
        self.radius = 0.0
        self.phase_shift = 0.0
        self.units = LengthUnit.MILLIMETERS
        if samples:
            self.units = samples[0].units
            samples = [s.convert_to_units(self.units) for s in samples]
            fit = kasa_circle_fit(samples)
            self.center_x = fit.center_x
            self.center_y = fit.center_y
            self.radius = fit.radius
            self.phase_shift = compute_phase_shift(samples, self.center_x, self.center_y)
            logger.debug(f"Runout model ({kind.value}): {self.describe()}")

    def runout(self, angle: float) -> Location:
        """Point on the runout circle at the angle, not re-centered."""
        a = math.radians(angle - self.phase_shift)
        return Location(self.units, self.radius * math.cos(a), self.radius * math.sin(a), 0.0, 0.0)

    def offset(self, angle: float) -> Location:
        runout = self.runout(angle)
        if self.algorithm is RunoutCompensationAlgorithm.MODEL:
            return runout.add(Location(self.units, self.center_x, self.center_y, 0.0, 0.0))
        return runout

    def camera_offset(self) -> Location:
        if self.algorithm is RunoutCompensationAlgorithm.MODEL_CAMERA_OFFSET:
            return Location(self.units, self.center_x, self.center_y, 0.0, 0.0)
        return Location(self.units)

    def axis_offset(self) -> Optional[Location]:
        return Location(self.units, self.center_x, self.center_y, 0.0, 0.0)

    def describe(self) -> str:
        if self.algorithm is RunoutCompensationAlgorithm.MODEL_NO_OFFSET:
            label = "Camera position error"
        elif self.algorithm is RunoutCompensationAlgorithm.MODEL_CAMERA_OFFSET:
            label = "Camera position offset"
        else:
            label = "Center"
        return f"{label} {self.center_x:.6f}, {self.center_y:.6f}, Runout {self.radius:.6f}"

    def to_dict(self) -> dict:
        return {
            'algorithm': self.algorithm.value,
            'center_x': self.center_x,
            'center_y': self.center_y,
            'radius': self.radius,
            'phase_shift': self.phase_shift,
            'units': self.units.short_name,
        }

    def __str__(self) -> str:
        return self.describe()


def create_runout_compensation(algorithm: RunoutCompensationAlgorithm,
                               samples: Sequence[Location]):
    """Build the compensation model for the algorithm from calibration samples."""
    if algorithm is RunoutCompensationAlgorithm.TABLE:
        return TableBasedRunoutCompensation(samples)
    return ModelBasedRunoutCompensation(samples, algorithm)


def runout_compensation_from_dict(data: dict):
    """Restore a model saved with to_dict()."""
    try:
        algorithm = RunoutCompensationAlgorithm(data['algorithm'])
        if algorithm is RunoutCompensationAlgorithm.TABLE:
            return TableBasedRunoutCompensation([Location.from_dict(s) for s in data['samples']])
        model = ModelBasedRunoutCompensation(kind=algorithm)
        model.center_x = float(data.get('center_x', 0.0))
        model.center_y = float(data.get('center_y', 0.0))
        model.radius = float(data.get('radius', 0.0))
        model.phase_shift = float(data.get('phase_shift', 0.0))
        model.units = LengthUnit.from_name(data.get('units', 'mm'))
        return model
    except (KeyError, ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid runout compensation data: {e}") from e


class RunoutCompensationTable:
    """
    Runout compensation models by nozzle tip id.

    Owned by the calibration system and cleared on reset, on machine geometry
    changes and, when configured, on tip unload.
    """

    def __init__(self):
        self._models: Dict[str, object] = {}
        self.logger = logging.getLogger(__name__)

    def get(self, tool_id: str):
        return self._models.get(tool_id)

    def set(self, tool_id: str, model) -> None:
        if model is None:
            self._models.pop(tool_id, None)
        else:
            self._models[tool_id] = model

    def reset(self, tool_id: str) -> None:
        self.set(tool_id, None)

    def reset_all(self) -> None:
        if self._models:
            self.logger.info(f"Resetting runout compensation of {len(self._models)} nozzle tip(s)")
        self._models.clear()

    def is_calibrated(self, tool_id: str) -> bool:
        return tool_id in self._models

    def tool_ids(self) -> List[str]:
        return list(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._models

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def to_dict(self) -> dict:
        return {tool_id: model.to_dict() for tool_id, model in self._models.items()}

    @classmethod
    def from_dict(cls, data: dict) -> "RunoutCompensationTable":
        table = cls()
        for tool_id, model_data in data.items():
            table.set(tool_id, runout_compensation_from_dict(model_data))
        return table
