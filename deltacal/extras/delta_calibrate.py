# Delta calibration support
#
# Copyright (C) 2017-2019  Kevin O'Connor <kevin@koconnor.net>
#
# This file may be distributed under the terms of the GNU GPLv3 license.
import math, logging, collections
import scipy.optimize
from .. import mathutil
from ..kinematics import delta
from . import probe

# Stop after this many consecutive iterations without an RMS improvement
MAX_IDLE_ITERATIONS = 20
# Hard limit on Newton-Raphson iterations, regardless of improvements
MAX_TOTAL_ITERATIONS = 1000

class CalibrationError(Exception):
    pass

class InsufficientDataError(CalibrationError):
    pass

class SingularFitError(CalibrationError):
    pass

CalibrationResult = collections.namedtuple('CalibrationResult', (
    'geometry', 'rms', 'min', 'max', 'residuals', 'initial_rms',
    'iterations'))

def calc_rms(errors):
    errors = list(errors)
    if not errors:
        return 0.
    return math.sqrt(sum(e * e for e in errors) / len(errors))

def _make_result(geometry, rms, residuals, initial_rms, iterations):
    errors = [p.error for p in residuals]
    return CalibrationResult(geometry, rms, min(errors), max(errors),
                             tuple(residuals), initial_rms, iterations)


######################################################################
# Newton-Raphson least squares fit
######################################################################

def calibrate(geometry, probing_data, factors,
              max_idle_iterations=MAX_IDLE_ITERATIONS,
              perturb=delta.DERIVATIVE_PERTURB,
              max_iterations=MAX_TOTAL_ITERATIONS):
    """Fit the active geometry factors to the probed points.

    The passed geometry is not modified; corrections are applied to a
    working copy and the best geometry found is returned in a
    CalibrationResult.  The fit stops once max_idle_iterations pass in
    a row without an RMS improvement, or after max_iterations in total.
    """
    factors = delta.normalize_mask(factors)
    factor_indexes = [i for i, f in enumerate(factors) if f]
    num_factors = len(factor_indexes)
    points = list(probing_data)
    num_points = len(points)
    if not num_points or num_factors > num_points:
        raise InsufficientDataError(
            "Need at least as many probe points (%d) as factors to"
            " calibrate (%d)" % (num_points, num_factors))
    logging.info("Calibrating factors %s using %d points"
                 % (", ".join(delta.active_factors(factors)), num_points))

    current = geometry.copy()
    # Probed carriage positions under the original geometry are held
    # fixed so multiple iterations can use the same data
    carriage_positions = [current.get_carriage_position(p.actual)
                          for p in points]
    probe_errors = [p.error for p in points]
    corrections = [0.] * num_points
    initial_rms = calc_rms(probe_errors)

    best_rms = initial_rms
    best_geometry = current.copy()
    best_residuals = points
    idle = total = 0
    while idle < max_idle_iterations:
        if total >= max_iterations:
            logging.warning("Calibration stopped after %d iterations"
                            " (best rms %.6f)" % (total, best_rms))
            break
        total += 1
        idle += 1
        # Build a matrix of derivatives
        derivatives = mathutil.Matrix(num_points, num_factors)
        for i in range(num_points):
            for j, k in enumerate(factor_indexes):
                derivatives.data[i][j] = current.compute_derivative(
                    k, carriage_positions[i], points[i].target, perturb)
        # Now build the normal equations for least squares fitting
        normal = mathutil.Matrix(num_factors, num_factors + 1)
        dd = derivatives.data
        for i in range(num_factors):
            for j in range(num_factors):
                normal.data[i][j] = sum(dd[k][i] * dd[k][j]
                                        for k in range(num_points))
            normal.data[i][num_factors] = sum(
                dd[k][i] * -(probe_errors[k] + corrections[k])
                for k in range(num_points))
        solution = normal.gauss_jordan(num_factors)
        if not all(math.isfinite(s) for s in solution):
            raise SingularFitError(
                "Unable to calculate corrections. Please make sure the bed"
                " probe points are all distinct.")
        current.adjust(factors, solution)
        # Calculate the expected probe errors using the new parameters
        residuals = []
        for i in range(num_points):
            effector = current.get_effector_position(carriage_positions[i])
            residual = probe.ProbePoint(points[i].target, effector)
            corrections[i] = residual.error - probe_errors[i]
            residuals.append(residual)
        rms = calc_rms(r.error for r in residuals)
        logging.debug("Iteration %d: rms %.9f (best %.9f)"
                      % (total, rms, best_rms))
        if rms < best_rms:
            best_rms = rms
            best_geometry = current.copy()
            best_residuals = residuals
            idle = 0
    logging.info("Calibrated %d factors using %d points in %d iterations,"
                 " deviation before %.6f after %.6f"
                 % (num_factors, num_points, total, initial_rms, best_rms))
    return _make_result(best_geometry, best_rms, best_residuals,
                        initial_rms, total)


######################################################################
# Optional scipy refinement
######################################################################

def refine_calibration(geometry, probing_data, factors, start_geometry=None):
    """Polish a geometry with a general purpose scipy minimizer.

    Probe points are projected to carriage positions with 'geometry'
    (the geometry in use when probing).  The search starts from
    'start_geometry' (default 'geometry') and the starting geometry is
    returned unchanged unless the minimizer lowers its RMS error.
    """
    factors = delta.normalize_mask(factors)
    num_factors = sum(factors)
    points = list(probing_data)
    if not points or num_factors > len(points):
        raise InsufficientDataError(
            "Need at least as many probe points (%d) as factors to"
            " calibrate (%d)" % (len(points), num_factors))
    if start_geometry is None:
        start_geometry = geometry
    carriage_positions = [geometry.get_carriage_position(p.actual)
                          for p in points]
    def calc_residuals(trial):
        return [probe.ProbePoint(p.target, trial.get_effector_position(cpos))
                for p, cpos in zip(points, carriage_positions)]
    def objective_func(x_values):
        trial = start_geometry.copy()
        try:
            trial.adjust(factors, list(x_values))
            residuals = calc_residuals(trial)
        except delta.UnreachableError as e:
            logging.debug("Refinement trial unreachable: %s" % (e,))
            return float('inf')
        return sum(r.error**2 for r in residuals)

    start_residuals = calc_residuals(start_geometry)
    start_rms = calc_rms(r.error for r in start_residuals)
    initial_values = [0.] * num_factors
    initial_error = objective_func(initial_values)
    logging.info("Refinement initial error: %.6e" % (initial_error,))
    final_values = initial_values
    best_error = initial_error
    result = scipy.optimize.minimize(
        objective_func, initial_values, method='L-BFGS-B',
        options={'maxiter': 3000, 'ftol': 1e-12, 'gtol': 1e-10})
    if math.isfinite(result.fun) and result.fun < best_error:
        final_values = [float(v) for v in result.x]
        best_error = result.fun
    if result.success:
        logging.info("L-BFGS-B optimization successful. Final error: %.6e"
                     % (result.fun,))
    else:
        logging.warning("L-BFGS-B failed: %s. Trying Nelder-Mead..."
                        % (result.message,))
        result = scipy.optimize.minimize(
            objective_func, final_values, method='Nelder-Mead',
            options={'maxiter': 20000, 'xatol': 1e-6, 'fatol': 1e-10})
        if math.isfinite(result.fun) and result.fun < best_error:
            final_values = [float(v) for v in result.x]
            best_error = result.fun
        if result.success:
            logging.info("Nelder-Mead optimization successful."
                         " Final error: %.6e" % (result.fun,))
        elif best_error < initial_error:
            logging.warning("Nelder-Mead failed: %s. Using best error %.6e"
                            % (result.message, best_error))
        else:
            logging.error("Both optimization methods failed."
                          " Using initial values.")
    initial_rms = calc_rms(p.error for p in points)
    refined = start_geometry.copy()
    refined.adjust(factors, final_values)
    residuals = calc_residuals(refined)
    rms = calc_rms(r.error for r in residuals)
    if rms >= start_rms:
        logging.info("Refinement did not improve rms %.6f" % (start_rms,))
        return _make_result(start_geometry.copy(), start_rms,
                            start_residuals, initial_rms, result.nit)
    return _make_result(refined, rms, residuals, initial_rms, result.nit)


######################################################################
# Delta Calibrate class
######################################################################

class DeltaCalibrate:
    def __init__(self, config):
        self.name = config.get_name()
        try:
            self.factors = delta.factor_mask(config.get('factors', 'legacy'))
        except ValueError as e:
            raise config.error("Option 'factors' in section '%s': %s"
                               % (self.name, e))
        self.max_idle_iterations = config.getint(
            'max_idle_iterations', MAX_IDLE_ITERATIONS, minval=1)
        self.perturb = config.getfloat('perturb', delta.DERIVATIVE_PERTURB,
                                       above=0.)
        self.refine = config.getboolean('refine', False)
    def calculate_params(self, geometry, probing_data):
        logging.info("Calculating delta calibration with %d points"
                     % (len(probing_data),))
        logging.info("Initial parameters: %s" % (geometry.get_params(),))
        result = calibrate(geometry, probing_data, self.factors,
                           self.max_idle_iterations, self.perturb)
        if self.refine:
            refined = refine_calibration(geometry, probing_data,
                                         self.factors, result.geometry)
            if refined.rms < result.rms:
                logging.info("Refinement lowered rms from %.6f to %.6f"
                             % (result.rms, refined.rms))
                result = refined._replace(iterations=result.iterations)
        logging.info("Final parameters: %s" % (result.geometry.get_params(),))
        for point, residual in zip(probing_data, result.residuals):
            logging.info("Height: original=%.6f new=%.6f target=%.6f"
                         % (point.z, residual.z, point.target[2]))
        return result

def load_config(config):
    return DeltaCalibrate(config.getsection('delta_calibrate'))
