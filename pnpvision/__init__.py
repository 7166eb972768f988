"""
PnP Vision - Pick and Place Machine Calibration Package

This package contains machine and vision calibration for pick and place machines.

Modules:
- calibration: Runout calibration, bottom vision alignment, backlash calibration
- scripts: Command line tools
"""

__version__ = "0.1.0"
