#!/usr/bin/env python3
"""
Nozzle Tip Calibration Dry Run

Runs a nozzle tip runout calibration against the simulated machine using a
calibration configuration file, and reports the fitted compensation and the
residual error after compensation.
"""

import argparse
import logging
import os
import sys

from pnpvision.calibration import CalibrationConfig, CalibrationSystem, Length, LengthUnit, Location, NozzleTip
from pnpvision.calibration.exceptions import PnpVisionError
from pnpvision.calibration.runout_compensation import RunoutCompensationAlgorithm
from pnpvision.calibration.simulation import (
    CircularSymmetryPipeline,
    RunoutError,
    SimulatedMachine,
    SimulatedNozzle,
    SimulatedUpCamera,
)


def build_simulated_machine(runout: float, phase: float, axis_offset: Location, tip_diameter: float):
    camera = SimulatedUpCamera(head_offsets=Location(LengthUnit.MILLIMETERS, 100.0, 50.0, -20.0, 0.0))
    machine = SimulatedMachine(camera)
    nozzle = SimulatedNozzle("N1", NozzleTip("NT1"), RunoutError(runout, phase, axis_offset),
                             tip_diameter=tip_diameter)
    camera.nozzles.append(nozzle)
    return machine, camera, nozzle


def main():
    """Main function."""
    parser = argparse.ArgumentParser(
        description="Nozzle tip runout calibration on a simulated machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --config calibration_config.json
  %(prog)s --runout 0.2 --algorithm Table --verbose
  %(prog)s --help
        """
    )

    parser.add_argument(
        '--config', '-c',
        default=os.path.join(os.path.dirname(__file__), '..', '..', 'config', 'calibration_config.json'),
        help='Path to calibration configuration file (default: config/calibration_config.json)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    parser.add_argument(
        '--validate-only',
        action='store_true',
        help='Only validate the configuration file, do not run the calibration'
    )

    parser.add_argument(
        '--runout',
        type=float,
        default=0.15,
        help='Simulated runout radius in mm (default: 0.15)'
    )

    parser.add_argument(
        '--phase',
        type=float,
        default=30.0,
        help='Simulated runout phase in degrees (default: 30)'
    )

    parser.add_argument(
        '--algorithm',
        choices=[a.value for a in RunoutCompensationAlgorithm],
        help='Override the configured compensation algorithm'
    )

    args = parser.parse_args()

    print("Nozzle Tip Runout Calibration")
    print("=" * 50)

    if os.path.exists(args.config):
        print(f"Loading calibration configuration from: {args.config}")
        try:
            config = CalibrationConfig.from_json(args.config)
        except PnpVisionError as e:
            print(f"Error loading calibration configuration: {e}")
            return 1
        print("✓ Calibration configuration loaded successfully")
    else:
        print(f"Configuration file not found: {args.config}, using defaults")
        config = CalibrationConfig()

    # Set up logging
    log_level = logging.DEBUG if args.verbose else getattr(logging, config.logging.level)
    logging.basicConfig(level=log_level, format=config.logging.format)

    if args.algorithm:
        config.nozzle_calibration.algorithm = RunoutCompensationAlgorithm(args.algorithm)

    nozzle_config = config.nozzle_calibration
    print(f"  Algorithm: {nozzle_config.algorithm.value}")
    print(f"  Angles: {nozzle_config.angle_start}° .. {nozzle_config.angle_stop}° "
          f"in {nozzle_config.angle_subdivisions} subdivisions")
    print(f"  Offset threshold: {nozzle_config.offset_threshold}")

    if args.validate_only:
        print("\nValidation complete (--validate-only specified)")
        return 0

    tip_diameter = 1.0
    machine, camera, nozzle = build_simulated_machine(
        args.runout, args.phase, Location(LengthUnit.MILLIMETERS, 0.05, -0.03, 0.0, 0.0), tip_diameter)
    system = CalibrationSystem(config, machine, CircularSymmetryPipeline(
        expected_diameter=Length(tip_diameter, LengthUnit.MILLIMETERS)))
    nozzle.camera_offset = system.get_calibrated_camera_offset

    print("\nCalibrating nozzle tip...")
    try:
        system.calibrate_nozzle(nozzle)
    except PnpVisionError as e:
        print(f"✗ Calibration failed: {e}")
        return 1
    print(f"✓ {system.nozzle_calibrator.runout_compensation_information(nozzle)}")

    # Apply the compensation and check what is left over at a few angles.
    nozzle.compensation = system.get_calibrated_offset
    target = camera.location_for(nozzle)
    print("\nResidual error after compensation:")
    for angle in (-135.0, -45.0, 0.0, 45.0, 135.0):
        nozzle.move_to(target.derive(rotation=angle))
        residual = nozzle.physical_location().linear_distance_to(camera.physical_location)
        print(f"  {angle:7.1f}°: {residual * 1000.0:6.1f} µm")

    stats = system.get_system_status()['statistics']
    print(f"\nStats: Calibrations={stats['nozzle_calibrations']}, Failures={stats['calibration_failures']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
