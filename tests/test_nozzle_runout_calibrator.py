"""
Tests for the nozzle tip runout calibration.

Unit tests drive the calibrator with fake nozzles and scripted pipelines;
the integration tests render a simulated nozzle tip with OpenCV and detect
it with the circular symmetry pipeline.
"""

import math

import pytest

from pnpvision.calibration.circular_symmetry import CircularSymmetryDetector
from pnpvision.calibration.exceptions import (
    CalibrationCancelledError,
    CalibrationDisabledError,
    CalibrationError,
    InsufficientVisionResultsError,
    MachineNotHomedError,
    MissingCameraError,
    ToolMismatchError,
    VisionError,
)
from pnpvision.calibration.geometry import Length, LengthUnit, Location
from pnpvision.calibration.machine import NozzleTip
from pnpvision.calibration.nozzle_runout_calibrator import (
    NozzleCalibrationSettings,
    NozzleRunoutCalibrator,
    RecalibrationTrigger,
    calibration_key,
)
from pnpvision.calibration.runout_compensation import (
    ModelBasedRunoutCompensation,
    RunoutCompensationAlgorithm,
    RunoutCompensationTable,
)
from pnpvision.calibration.simulation import (
    CircularSymmetryPipeline,
    RunoutError,
    SimulatedMachine,
    SimulatedNozzle,
    SimulatedUpCamera,
)
from pnpvision.calibration.vision_utils import Circle

from conftest import FakeMachine, FakeNozzle, NozzleTipPipeline, ScriptedPipeline

MM = LengthUnit.MILLIMETERS


def make_calibrator(machine, pipeline, table=None, **settings):
    return NozzleRunoutCalibrator(
        NozzleCalibrationSettings(**settings),
        table if table is not None else RunoutCompensationTable(),
        machine,
        pipeline,
    )


class TestPreconditions:

    def test_disabled(self, machine, nozzle):
        calibrator = make_calibrator(machine, ScriptedPipeline(None), enabled=False)
        with pytest.raises(CalibrationDisabledError):
            calibrator.calibrate(nozzle)
        assert nozzle.moves == []

    def test_not_homed(self, camera, nozzle):
        calibrator = make_calibrator(FakeMachine(camera, homed=False), ScriptedPipeline(None))
        with pytest.raises(MachineNotHomedError):
            calibrator.calibrate(nozzle)
        assert nozzle.moves == []

    def test_homing_skips_homed_check(self, camera, nozzle):
        """Test the homed check is skipped while homing."""
        calibrator = make_calibrator(FakeMachine(camera, homed=False), NozzleTipPipeline(nozzle))
        calibrator.calibrate(nozzle, homing=True)
        assert calibrator.is_calibrated(nozzle)

    def test_other_tip_loaded(self, machine, nozzle):
        calibrator = make_calibrator(machine, ScriptedPipeline(None))
        with pytest.raises(ToolMismatchError, match="load the selected"):
            calibrator.calibrate(nozzle, nozzle_tip=NozzleTip("NT2"))
        assert nozzle.moves == []

    def test_unloaded_standin_target(self, machine, nozzle):
        """Test the unloaded stand-in asks for an unload instead."""
        calibrator = make_calibrator(machine, ScriptedPipeline(None))
        with pytest.raises(ToolMismatchError, match="unload"):
            calibrator.calibrate(nozzle, nozzle_tip=NozzleTip("unloaded", unloaded_standin=True))

    def test_no_tip_loaded(self, machine):
        calibrator = make_calibrator(machine, ScriptedPipeline(None))
        nozzle = FakeNozzle()
        nozzle._tip = None
        with pytest.raises(ToolMismatchError):
            calibrator.calibrate(nozzle)

    def test_no_camera(self, nozzle):
        calibrator = make_calibrator(FakeMachine(None), ScriptedPipeline(None))
        with pytest.raises(MissingCameraError):
            calibrator.calibrate(nozzle)
        assert nozzle.moves == []

    def test_camera_mode_needs_calibrated_tip(self, machine, nozzle):
        calibrator = make_calibrator(machine, ScriptedPipeline(None))
        with pytest.raises(CalibrationError):
            calibrator.calibrate(nozzle, calibrate_camera=True)
        assert nozzle.moves == []


class TestSweep:

    def test_insufficient_results_and_cleanup(self, machine, nozzle):
        """Test failed runs still return to the camera and clear the calibrating flag."""
        calibrator = make_calibrator(machine, ScriptedPipeline(None))
        with pytest.raises(InsufficientVisionResultsError):
            calibrator.calibrate(nozzle)
        assert nozzle.moves[-1] == Location(MM, 100.0, 50.0, -20.0, 180.0)
        assert nozzle.safe_z_moves == 2
        assert not calibrator.is_calibrating()
        assert not calibrator.is_calibrated(nozzle)

    def test_tool_mode_resets_previous_model(self, machine, nozzle):
        """Test a failed run leaves the tip uncalibrated."""
        table = RunoutCompensationTable()
        table.set(calibration_key(nozzle), ModelBasedRunoutCompensation())
        calibrator = make_calibrator(machine, ScriptedPipeline(None), table=table)
        with pytest.raises(InsufficientVisionResultsError):
            calibrator.calibrate(nozzle)
        assert not calibrator.is_calibrated(nozzle)

    @pytest.mark.parametrize("start,stop,count", [
        (-180.0, 180.0, 6),
        (0.0, 180.0, 7),
    ])
    def test_measurement_count(self, machine, nozzle, start, stop, count):
        """Test a full circle skips the duplicate final angle."""
        pipeline = ScriptedPipeline(Circle(320.0, 240.0, 20.0))
        calibrator = make_calibrator(machine, pipeline, angle_start=start, angle_stop=stop,
                                     algorithm=RunoutCompensationAlgorithm.TABLE)
        calibrator.calibrate(nozzle)
        assert len(pipeline.calls) == count
        rotations = [m.rotation for m in nozzle.moves[1:1 + count]]
        assert rotations[0] == start
        assert rotations[1] - rotations[0] == pytest.approx((stop - start) / 6)

    def test_allowed_misdetections(self, machine, nozzle):
        hit = [Circle(320.0, 240.0, 20.0)]
        pipeline = ScriptedPipeline(hit, None, hit, hit, None, hit, hit)
        calibrator = make_calibrator(machine, pipeline, allow_misdetections=2)
        calibrator.calibrate(nozzle)
        assert calibrator.is_calibrated(nozzle)

    def test_seed_center_passed_to_pipeline(self, machine, nozzle):
        pipeline = ScriptedPipeline([Circle(320.0, 240.0, 20.0)])
        make_calibrator(machine, pipeline).calibrate(nozzle)
        assert pipeline.calls[0]['center'] == pytest.approx((320.0, 240.0))

    def test_pipeline_exception_propagates(self, machine, nozzle):
        calibrator = make_calibrator(machine, ScriptedPipeline(VisionError("stage failed")))
        with pytest.raises(VisionError, match="stage failed"):
            calibrator.calibrate(nozzle)
        assert not calibrator.is_calibrating()

    def test_unrecognized_result(self, machine, nozzle):
        calibrator = make_calibrator(machine, ScriptedPipeline(["not a result"]))
        with pytest.raises(VisionError):
            calibrator.calibrate(nozzle)

    def test_cancellation(self, machine, nozzle):
        pipeline = ScriptedPipeline(None)
        calibrator = NozzleRunoutCalibrator(NozzleCalibrationSettings(), RunoutCompensationTable(),
                                            machine, pipeline, cancel_check=lambda: True)
        with pytest.raises(CalibrationCancelledError):
            calibrator.calibrate(nozzle)
        assert pipeline.calls == []
        assert not calibrator.is_calibrating()


class TestFindCircle:

    def test_threshold_drops_far_results(self, machine, camera):
        """Test results beyond the offset threshold are dropped before picking the first."""
        pipeline = ScriptedPipeline([Circle(420.0, 240.0, 20.0), Circle(325.0, 240.0, 20.0)])
        calibrator = make_calibrator(machine, pipeline)
        offset = calibrator.find_circle(camera, camera.location)
        assert offset.x == pytest.approx(0.1)
        assert offset.y == pytest.approx(0.0)

    def test_all_results_dropped(self, machine, camera):
        calibrator = make_calibrator(machine, ScriptedPipeline([Circle(420.0, 240.0, 20.0)]))
        assert calibrator.find_circle(camera, camera.location) is None

    def test_single_result(self, machine, camera):
        calibrator = make_calibrator(machine, ScriptedPipeline(Circle(320.0, 230.0, 20.0)))
        offset = calibrator.find_circle(camera, camera.location)
        assert offset.y == pytest.approx(0.2)

    def test_threshold_units(self, machine, camera):
        calibrator = make_calibrator(machine, ScriptedPipeline([Circle(420.0, 240.0, 20.0)]),
                                     offset_threshold=Length(0.25, LengthUnit.CENTIMETERS))
        assert calibrator.find_circle(camera, camera.location).x == pytest.approx(2.0)


class TestModelFit:

    def test_model_fit(self, machine, nozzle):
        """Test the fitted model matches the nozzle's runout."""
        pipeline = NozzleTipPipeline(nozzle, radius=0.2, phase=35.0,
                                     axis_offset=Location(MM, 0.05, -0.03))
        calibrator = make_calibrator(machine, pipeline)
        calibrator.calibrate(nozzle)
        model = calibrator.get_runout_compensation(nozzle)
        assert model.radius == pytest.approx(0.2, abs=1e-6)
        assert model.center_x == pytest.approx(0.05, abs=1e-6)
        assert model.center_y == pytest.approx(-0.03, abs=1e-6)
        assert model.phase_shift == pytest.approx(-35.0, abs=1e-6)
        for angle in (-135.0, 10.0, 99.0):
            offset = calibrator.get_calibrated_offset(nozzle, angle)
            expected = pipeline.tip_offset(angle)
            assert offset.x == pytest.approx(expected.x, abs=1e-6)
            assert offset.y == pytest.approx(expected.y, abs=1e-6)
        assert calibrator.runout_compensation_information(nozzle).startswith("Center")

    @pytest.mark.parametrize("phase", [180.0, -180.0, 179.0])
    def test_model_fit_half_turn_phase(self, machine, nozzle, phase):
        """Test a runout phase near half a turn still compensates at every angle."""
        pipeline = NozzleTipPipeline(nozzle, radius=0.2, phase=phase)
        calibrator = make_calibrator(machine, pipeline)
        calibrator.calibrate(nozzle)
        model = calibrator.get_runout_compensation(nozzle)
        assert -180.0 < model.phase_shift <= 180.0
        for angle in range(-180, 180, 15):
            offset = calibrator.get_calibrated_offset(nozzle, float(angle))
            expected = pipeline.tip_offset(float(angle))
            assert offset.x == pytest.approx(expected.x, abs=1e-6)
            assert offset.y == pytest.approx(expected.y, abs=1e-6)

    def test_uncalibrated_queries(self, machine, nozzle, camera):
        calibrator = make_calibrator(machine, ScriptedPipeline(None))
        assert calibrator.runout_compensation_information(nozzle) == "Uncalibrated"
        assert calibrator.get_calibrated_offset(nozzle, 45.0) == Location(MM)
        assert calibrator.get_calibrated_camera_offset(nozzle, camera) == Location(MM)

    def test_camera_offset_only_for_bottom_camera(self, machine, nozzle, camera):
        table = RunoutCompensationTable()
        model = ModelBasedRunoutCompensation(kind=RunoutCompensationAlgorithm.MODEL_CAMERA_OFFSET)
        model.center_x = 0.1
        table.set(calibration_key(nozzle), model)
        calibrator = make_calibrator(machine, ScriptedPipeline(None), table=table)
        assert calibrator.get_calibrated_camera_offset(nozzle, camera).x == pytest.approx(0.1)
        other = type(camera)("Top", 640, 480, camera.units_per_pixel)
        assert calibrator.get_calibrated_camera_offset(nozzle, other) == Location(MM)

    def test_disabled_queries_return_zero(self, machine, nozzle):
        table = RunoutCompensationTable()
        model = ModelBasedRunoutCompensation()
        model.center_x = 0.1
        table.set(calibration_key(nozzle), model)
        calibrator = make_calibrator(machine, ScriptedPipeline(None), table=table, enabled=False)
        assert calibrator.get_calibrated_offset(nozzle, 0.0) == Location(MM)


class TestCameraCalibration:

    def test_camera_position_and_rotation(self, machine, nozzle, camera):
        """Test an eccentric sweep corrects the camera position and rotation."""
        table = RunoutCompensationTable()
        table.set(calibration_key(nozzle), ModelBasedRunoutCompensation())
        head_offsets = camera.head_offsets
        true_camera = Location(MM, 100.1, 49.95, -20.0)
        error = 1.0
        pipeline = NozzleTipPipeline(nozzle, true_camera_location=true_camera,
                                     camera_rotation_error=error)
        calibrator = make_calibrator(machine, pipeline, table=table)
        calibrator.calibrate(nozzle, calibrate_camera=True)

        assert camera.rotation == pytest.approx(-error, abs=1e-6)
        expected = head_offsets.subtract(head_offsets.subtract(true_camera).rotate_xy(-error))
        assert camera.head_offsets.x == pytest.approx(expected.x, abs=1e-6)
        assert camera.head_offsets.y == pytest.approx(expected.y, abs=1e-6)
        # The tool calibration stays in place.
        assert calibrator.is_calibrated(nozzle)

    def test_eccentric_sweep(self, machine, nozzle, camera):
        """Test the nozzle orbits the camera center at a quarter of the minimum dimension."""
        table = RunoutCompensationTable()
        table.set(calibration_key(nozzle), ModelBasedRunoutCompensation())
        calibrator = make_calibrator(machine, NozzleTipPipeline(nozzle), table=table)
        calibrator.calibrate(nozzle, calibrate_camera=True)
        first = nozzle.moves[1]
        assert first.x == pytest.approx(100.0 - 480 * 0.25 * 0.02)
        assert first.y == pytest.approx(50.0, abs=1e-9)


class TestRecalibrationQueries:

    @pytest.mark.parametrize("trigger,in_job,change,home", [
        (RecalibrationTrigger.NOZZLE_TIP_CHANGE_IN_JOB, True, False, False),
        (RecalibrationTrigger.NOZZLE_TIP_CHANGE, False, True, True),
        (RecalibrationTrigger.MACHINE_HOME, False, True, True),
        (RecalibrationTrigger.MANUAL, False, False, False),
    ])
    def test_triggers(self, machine, nozzle, trigger, in_job, change, home):
        calibrator = make_calibrator(machine, ScriptedPipeline(None), recalibration_trigger=trigger)
        assert calibrator.is_recalibrate_on_tip_change_in_job_needed(nozzle) is in_job
        assert calibrator.is_recalibrate_on_tip_change_needed(nozzle) is change
        assert calibrator.is_recalibrate_on_home_needed(nozzle) is home

    def test_machine_home_trigger_skips_calibrated_tip_change(self, machine, nozzle):
        table = RunoutCompensationTable()
        table.set(calibration_key(nozzle), ModelBasedRunoutCompensation())
        calibrator = make_calibrator(machine, ScriptedPipeline(None), table=table,
                                     recalibration_trigger=RecalibrationTrigger.MACHINE_HOME)
        assert not calibrator.is_recalibrate_on_tip_change_needed(nozzle)


class TestSimulatedCalibration:

    RUNOUT = RunoutError(0.15, 30.0, Location(MM, 0.1, -0.05))

    def build(self, algorithm=RunoutCompensationAlgorithm.MODEL, physical_location=None,
              physical_rotation=0.0):
        camera = SimulatedUpCamera(head_offsets=Location(MM, 50.0, 30.0, -10.0),
                                   physical_location=physical_location,
                                   physical_rotation=physical_rotation)
        nozzle = SimulatedNozzle("N1", NozzleTip("NT1"), runout=self.RUNOUT)
        camera.nozzles.append(nozzle)
        machine = SimulatedMachine(camera)
        pipeline = CircularSymmetryPipeline(CircularSymmetryDetector(max_distance=30),
                                            expected_diameter=Length(1.0, MM))
        calibrator = make_calibrator(machine, pipeline, algorithm=algorithm)
        nozzle.compensation = calibrator.get_calibrated_offset
        nozzle.camera_offset = calibrator.get_calibrated_camera_offset
        return camera, nozzle, calibrator

    def residuals(self, camera, nozzle, angles):
        result = []
        for angle in angles:
            nozzle.move_to(camera.location_for(nozzle).derive(rotation=angle))
            result.append(nozzle.physical_location().linear_distance_to(camera.physical_location))
        return result

    def test_detected_runout(self):
        camera, nozzle, calibrator = self.build()
        calibrator.calibrate(nozzle)
        model = calibrator.get_runout_compensation(nozzle)
        assert model.radius == pytest.approx(0.15, abs=0.04)
        assert model.center_x == pytest.approx(0.1, abs=0.04)
        assert model.center_y == pytest.approx(-0.05, abs=0.04)

    @pytest.mark.parametrize("algorithm", [
        RunoutCompensationAlgorithm.MODEL,
        RunoutCompensationAlgorithm.MODEL_CAMERA_OFFSET,
        RunoutCompensationAlgorithm.TABLE,
    ])
    def test_compensated_tip_over_camera(self, algorithm):
        """Test the compensated tip ends up over the camera center at the sweep angles."""
        camera, nozzle, calibrator = self.build(algorithm)
        calibrator.calibrate(nozzle)
        for residual in self.residuals(camera, nozzle, [-180.0, -120.0, -60.0, 0.0, 60.0, 120.0]):
            assert residual < 0.05

    def test_no_offset_keeps_axis_offset(self):
        """Test the no-offset variant leaves the axis offset uncompensated."""
        camera, nozzle, calibrator = self.build(RunoutCompensationAlgorithm.MODEL_NO_OFFSET)
        calibrator.calibrate(nozzle)
        axis_offset = math.hypot(0.1, -0.05)
        for residual in self.residuals(camera, nozzle, [-120.0, 0.0, 120.0]):
            assert residual == pytest.approx(axis_offset, abs=0.05)

    def test_camera_rotation_calibration(self):
        """Test camera mode recovers the camera mounting rotation."""
        camera, nozzle, calibrator = self.build(
            physical_location=Location(MM, 50.2, 29.9, -10.0), physical_rotation=1.5)
        calibrator.calibrate(nozzle)
        calibrator.calibrate(nozzle, calibrate_camera=True)
        assert camera.rotation == pytest.approx(-1.5, abs=0.5)
        assert calibrator.is_calibrated(nozzle)
        assert not calibrator.is_calibrating()


if __name__ == "__main__":
    pytest.main([__file__])
