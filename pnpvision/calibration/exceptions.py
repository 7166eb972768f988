"""Exceptions raised by the calibration and alignment routines."""


class PnpVisionError(Exception):
    """Base exception for all calibration and alignment errors."""
    pass


class ConfigurationError(PnpVisionError):
    """Raised when calibration settings are missing or out of range."""
    pass


class PreconditionError(PnpVisionError):
    """
    Raised before any motion when an operation cannot start.

    No state is mutated when this is raised.
    """
    pass


class CalibrationDisabledError(PreconditionError):
    """Raised when a disabled calibration is requested."""
    pass


class MachineNotHomedError(PreconditionError):
    """Raised when the machine must be homed first."""
    pass


class ToolMismatchError(PreconditionError):
    """Raised when the loaded nozzle tip is not the calibration target."""
    pass


class MissingCameraError(PreconditionError):
    """Raised when no suitable camera is available."""
    pass


class VisionError(PnpVisionError):
    """Raised when the vision pipeline returns nothing usable."""
    pass


class InsufficientVisionResultsError(VisionError):
    """Raised when too few valid samples were collected in a sweep."""
    pass


class ToleranceError(PnpVisionError):
    """Raised when a measured value is outside its tolerance."""
    pass


class PartSizeError(ToleranceError):
    """Raised when the detected part outline does not match its footprint."""
    pass


class BacklashCompensationError(ToleranceError):
    """Raised when an axis overshoots even at the lowest speed factor."""
    pass


class CalibrationError(PnpVisionError):
    """Raised when a calibration run cannot be completed."""
    pass


class CalibrationCancelledError(CalibrationError):
    """Raised when a running calibration was cancelled between steps."""
    pass


class AlignmentError(PnpVisionError):
    """Raised when a part cannot be aligned."""
    pass


class CircleFitError(PnpVisionError):
    """Raised when a circle cannot be fitted to the given points."""
    pass
