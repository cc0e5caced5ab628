import math
import os
import logging
import tempfile
import unittest
from unittest import mock

from deltacal import configfile, __main__ as cli
from deltacal.kinematics import delta
from deltacal.extras import probe, delta_calibrate

ENDSTOP_FACTORS = delta.factor_mask('endstop_a, endstop_b, endstop_c')


def nominal_geometry():
    return delta.DeltaGeometry(diagonal_rod=200., radius=100., height=300.,
                               steps_per_unit=(80., 80., 80.))

def bed_targets(radius=60.):
    # Center plus six points spread around the bed
    targets = [(0., 0., 0.)]
    for i in range(6):
        r = math.radians(90. + 60. * i)
        targets.append((math.cos(r) * radius, math.sin(r) * radius, 0.))
    return targets

def offset_probing_data(z_offset=0.5):
    return probe.ProbingData(
        probe.ProbePoint(t, (t[0], t[1], t[2] + z_offset))
        for t in bed_targets())

def simulated_probing_data(firmware_geometry, true_geometry, targets):
    # The probe triggers when the real effector reaches the bed; the
    # firmware reports where it believes the effector is at that time
    data = probe.ProbingData()
    for target in targets:
        carriages = true_geometry.get_carriage_position(target)
        reported = firmware_geometry.get_effector_position(carriages)
        data.add_point(probe.ProbePoint(target, reported))
    return data


class TestCalibrate(unittest.TestCase):

    def test_zero_noise_is_fixed_point(self):
        geometry = nominal_geometry()
        data = probe.ProbingData(probe.ProbePoint(t, t)
                                 for t in bed_targets())
        result = delta_calibrate.calibrate(geometry, data, ENDSTOP_FACTORS)
        self.assertLess(result.rms, 1e-6)
        self.assertEqual(result.initial_rms, 0.)
        self.assertTrue(result.geometry.is_close(geometry, 1e-6))
        self.assertEqual(len(result.residuals), len(data))

    def test_uniform_z_offset_absorbed_into_height(self):
        geometry = nominal_geometry()
        data = offset_probing_data(0.5)
        result = delta_calibrate.calibrate(geometry, data, ENDSTOP_FACTORS)
        self.assertAlmostEqual(result.initial_rms, 0.5)
        self.assertLess(result.rms, 0.01)
        self.assertAlmostEqual(result.geometry.height, 299.5, delta=0.01)
        self.assertLess(max(result.geometry.endstop_offset), 0.01)
        self.assertEqual(min(result.geometry.endstop_offset), 0.)
        self.assertLessEqual(result.min, result.max)
        self.assertAlmostEqual(
            result.rms,
            delta_calibrate.calc_rms(r.error for r in result.residuals))

    def test_caller_geometry_not_mutated(self):
        geometry = nominal_geometry()
        delta_calibrate.calibrate(geometry, offset_probing_data(),
                                  ENDSTOP_FACTORS)
        self.assertTrue(geometry.is_close(nominal_geometry(), 0.))

    def test_recovers_endstop_errors(self):
        firmware = nominal_geometry()
        true_geometry = delta.DeltaGeometry(
            diagonal_rod=200., radius=100., height=300.,
            endstop_offset=(0., 0.4, 0.2), steps_per_unit=(80., 80., 80.))
        data = simulated_probing_data(firmware, true_geometry, bed_targets())
        self.assertGreater(data.rms, 0.05)
        result = delta_calibrate.calibrate(firmware, data, ENDSTOP_FACTORS)
        self.assertLess(result.rms, 1e-3)
        for got, want in zip(result.geometry.endstop_offset,
                             true_geometry.endstop_offset):
            self.assertAlmostEqual(got, want, delta=0.01)
        self.assertAlmostEqual(result.geometry.height, 300., delta=0.01)

    def test_legacy_length_mask(self):
        mask = [True, True, True] + [False] * 7
        result = delta_calibrate.calibrate(nominal_geometry(),
                                           offset_probing_data(), mask)
        self.assertLess(result.rms, 0.01)

    def test_too_many_factors(self):
        geometry = nominal_geometry()
        with self.assertRaises(delta_calibrate.InsufficientDataError):
            delta_calibrate.calibrate(geometry, offset_probing_data(),
                                      delta.factor_mask('all'))
        self.assertTrue(geometry.is_close(nominal_geometry(), 0.))

    def test_no_points(self):
        with self.assertRaises(delta_calibrate.InsufficientDataError):
            delta_calibrate.calibrate(nominal_geometry(),
                                      probe.ProbingData(), ENDSTOP_FACTORS)

    def test_identical_points_are_singular(self):
        point = probe.ProbePoint((10., 10., 0.), (10., 10., 0.5))
        data = probe.ProbingData([point] * 7)
        with self.assertRaises(delta_calibrate.SingularFitError):
            delta_calibrate.calibrate(nominal_geometry(), data,
                                      ENDSTOP_FACTORS)

    def test_unreachable_probe_point(self):
        data = probe.ProbingData([probe.ProbePoint((0., 0., 0.),
                                                   (500., 0., 0.))] * 3)
        with self.assertRaises(delta.UnreachableError):
            delta_calibrate.calibrate(nominal_geometry(), data,
                                      ENDSTOP_FACTORS)

    def test_stops_after_idle_iterations(self):
        data = probe.ProbingData(probe.ProbePoint(t, t)
                                 for t in bed_targets())
        result = delta_calibrate.calibrate(nominal_geometry(), data,
                                           ENDSTOP_FACTORS,
                                           max_idle_iterations=3)
        self.assertEqual(result.iterations, 3)

    def test_idle_count_resets_on_improvement(self):
        data = probe.ProbingData(probe.ProbePoint(t, t)
                                 for t in bed_targets())
        # Initial rms, then one value per iteration
        rms_values = [1., .9, .95, .8, .85, .85, .85]
        with mock.patch.object(delta_calibrate, 'calc_rms',
                               side_effect=rms_values):
            result = delta_calibrate.calibrate(nominal_geometry(), data,
                                               ENDSTOP_FACTORS,
                                               max_idle_iterations=3)
        self.assertEqual(result.iterations, 6)
        self.assertEqual(result.rms, .8)
        self.assertEqual(result.initial_rms, 1.)

    def test_improving_fit_runs_past_idle_limit(self):
        firmware = nominal_geometry()
        true_geometry = delta.DeltaGeometry(
            diagonal_rod=200., radius=100., height=300.,
            endstop_offset=(0., 0.4, 0.2), steps_per_unit=(80., 80., 80.))
        data = simulated_probing_data(firmware, true_geometry, bed_targets())
        result = delta_calibrate.calibrate(firmware, data, ENDSTOP_FACTORS,
                                           max_idle_iterations=3)
        self.assertGreater(result.iterations, 3)
        self.assertLess(result.rms, 1e-3)

    def test_total_iteration_limit(self):
        data = probe.ProbingData(probe.ProbePoint(t, t)
                                 for t in bed_targets())
        rms_values = [1., .9, .8, .7, .6]
        with mock.patch.object(delta_calibrate, 'calc_rms',
                               side_effect=rms_values):
            with self.assertLogs(level='WARNING') as logs:
                result = delta_calibrate.calibrate(
                    nominal_geometry(), data, ENDSTOP_FACTORS,
                    max_idle_iterations=3, max_iterations=4)
        self.assertEqual(result.iterations, 4)
        self.assertEqual(result.rms, .6)
        self.assertIn("stopped after 4 iterations", logs.output[0])

    def test_total_iteration_limit_keeps_best_fit(self):
        firmware = nominal_geometry()
        true_geometry = delta.DeltaGeometry(
            diagonal_rod=200., radius=100., height=300.,
            endstop_offset=(0., 0.4, 0.2), steps_per_unit=(80., 80., 80.))
        data = simulated_probing_data(firmware, true_geometry, bed_targets())
        result = delta_calibrate.calibrate(firmware, data, ENDSTOP_FACTORS,
                                           max_iterations=1)
        self.assertEqual(result.iterations, 1)
        self.assertLess(result.rms, data.rms)
        self.assertFalse(result.geometry.is_close(firmware, 1e-3))


class TestRefineCalibration(unittest.TestCase):

    def test_refine_from_initial_geometry(self):
        geometry = nominal_geometry()
        result = delta_calibrate.refine_calibration(
            geometry, offset_probing_data(), ENDSTOP_FACTORS)
        self.assertAlmostEqual(result.initial_rms, 0.5)
        self.assertLess(result.rms, 0.05)
        self.assertTrue(geometry.is_close(nominal_geometry(), 0.))

    def test_refine_never_worsens(self):
        geometry = nominal_geometry()
        data = offset_probing_data()
        newton = delta_calibrate.calibrate(geometry, data, ENDSTOP_FACTORS)
        refined = delta_calibrate.refine_calibration(
            geometry, data, ENDSTOP_FACTORS, newton.geometry)
        self.assertLessEqual(refined.rms, newton.rms + 1e-12)


CALIBRATE_CONFIG = """
[printer]
diagonal_rod: 200
delta_radius: 100
height: 300

[stepper_a]
steps_per_unit: 80

[stepper_b]
steps_per_unit: 80

[stepper_c]
steps_per_unit: 80

[delta_calibrate]
factors: endstop_a, endstop_b, endstop_c
%s
"""

def probe_config_lines(data):
    lines = []
    for i, point in enumerate(data):
        lines.append("target%d: %.6f, %.6f, %.6f" % ((i,) + point.target))
        lines.append("actual%d: %.6f, %.6f, %.6f" % ((i,) + point.actual))
    return "\n".join(lines)


class TestDeltaCalibrate(unittest.TestCase):

    def make_config(self, extra=""):
        data = probe_config_lines(offset_probing_data())
        return configfile.parse_config(CALIBRATE_CONFIG % (data + extra,))

    def test_options(self):
        calibrator = delta_calibrate.load_config(
            self.make_config("\nmax_idle_iterations: 5\nrefine: true"))
        self.assertEqual(calibrator.factors, ENDSTOP_FACTORS)
        self.assertEqual(calibrator.max_idle_iterations, 5)
        self.assertEqual(calibrator.perturb, 0.2)
        self.assertTrue(calibrator.refine)

    def test_bad_factor_option(self):
        config = configfile.parse_config(
            "[delta_calibrate]\nfactors: endstop_a, wobble\n")
        with self.assertRaises(configfile.error):
            delta_calibrate.load_config(config)

    def test_bad_perturb_option(self):
        with self.assertRaises(configfile.error):
            delta_calibrate.load_config(self.make_config("\nperturb: 0"))

    def test_calculate_params(self):
        config = self.make_config("\nrefine: true")
        geometry = delta.load_geometry(config)
        data = probe.load_probing_data(config.getsection('delta_calibrate'))
        calibrator = delta_calibrate.load_config(config)
        result = calibrator.calculate_params(geometry, data)
        self.assertLess(result.rms, 0.01)
        self.assertAlmostEqual(result.initial_rms, 0.5, places=5)


class TestCommandLine(unittest.TestCase):

    def write_config(self, text):
        fd, path = tempfile.mkstemp(suffix='.cfg')
        with os.fdopen(fd, 'w') as f:
            f.write(text)
        self.addCleanup(os.remove, path)
        return path

    def test_main_success(self):
        data = probe_config_lines(offset_probing_data())
        path = self.write_config(CALIBRATE_CONFIG % (data,))
        result = cli.run(path)
        self.assertLess(result.rms, 0.01)
        self.assertEqual(cli.main([path]), 0)

    def test_main_config_error(self):
        path = self.write_config("[printer]\ndelta_radius: 100\n")
        self.assertEqual(cli.main([path]), 1)

    def test_main_calibration_error(self):
        text = CALIBRATE_CONFIG % ("target0: 0, 0, 0\nactual0: 0, 0, 0.5",)
        path = self.write_config(text)
        self.assertEqual(cli.main([path]), 1)

    def test_main_missing_file(self):
        self.assertEqual(cli.main([os.path.join(tempfile.gettempdir(),
                                                'no-such-deltacal.cfg')]), 1)


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    unittest.main()
