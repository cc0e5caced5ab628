# Code for handling the geometry of linear delta robots
#
# Copyright (C) 2016-2023  Kevin O'Connor <kevin@koconnor.net>
#
# This file may be distributed under the terms of the GNU GPLv3 license.
import math, logging, enum
from .. import mathutil
from ..extras import probe

# Default perturbation (in mm or degrees) for numerical derivatives
DERIVATIVE_PERTURB = 0.2

class Axis(enum.IntEnum):
    X = 0
    Y = 1
    Z = 2

class Tower(enum.IntEnum):
    ALPHA = 0
    BETA = 1
    GAMMA = 2

# Calibration factors in the order corrections are applied
FACTORS = (
    'endstop_a', 'endstop_b', 'endstop_c',
    'radius',
    'angle_a', 'angle_b',
    'diagonal_rod',
    'steps_per_unit_a', 'steps_per_unit_b', 'steps_per_unit_c',
    'radius_adjust_a', 'radius_adjust_b', 'radius_adjust_c',
    'diagonal_rod_adjust_a', 'diagonal_rod_adjust_b', 'diagonal_rod_adjust_c',
    'height',
)
MAX_FACTORS = len(FACTORS)
# The original 10 factor set (endstops, radius, angles, rod, steps)
LEGACY_FACTORS = FACTORS[:10]

class UnreachableError(ValueError):
    pass

def normalize_mask(factors):
    factors = [bool(f) for f in factors]
    if len(factors) == len(LEGACY_FACTORS):
        factors += [False] * (MAX_FACTORS - len(LEGACY_FACTORS))
    if len(factors) != MAX_FACTORS:
        raise ValueError("Factor mask must have %d or %d entries, got %d"
                         % (len(LEGACY_FACTORS), MAX_FACTORS, len(factors)))
    return factors

def factor_mask(names):
    if isinstance(names, str):
        names = [n.strip() for n in names.split(',') if n.strip()]
    selected = set()
    for name in names:
        name = name.lower()
        if name == 'all':
            selected.update(FACTORS)
        elif name == 'legacy':
            selected.update(LEGACY_FACTORS)
        elif name in FACTORS:
            selected.add(name)
        else:
            raise ValueError("Unknown calibration factor '%s'" % (name,))
    return [f in selected for f in FACTORS]

def active_factors(factors):
    return [name for name, f in zip(FACTORS, normalize_mask(factors)) if f]


######################################################################
# Delta geometry
######################################################################

class DeltaGeometry:
    def __init__(self, diagonal_rod=0., radius=0., height=0.,
                 endstop_offset=(0., 0., 0.), tower_offset=(0., 0., 0.),
                 steps_per_unit=(1., 1., 1.), radius_adjust=(0., 0., 0.),
                 diagonal_rod_adjust=(0., 0., 0.)):
        self.diagonal_rod = diagonal_rod
        self.diagonal_rod_adjust = list(diagonal_rod_adjust)
        self.radius = radius
        self.radius_adjust = list(radius_adjust)
        self.tower_offset = list(tower_offset)
        self.steps_per_unit = list(steps_per_unit)
        self.height = height
        self.endstop_offset = list(endstop_offset)
        self.recompute_geometry()
    def copy(self):
        return DeltaGeometry(self.diagonal_rod, self.radius, self.height,
                             self.endstop_offset, self.tower_offset,
                             self.steps_per_unit, self.radius_adjust,
                             self.diagonal_rod_adjust)
    def arm_length(self, tower):
        return self.diagonal_rod + self.diagonal_rod_adjust[tower]
    def recompute_geometry(self):
        r = [self.radius + ra for ra in self.radius_adjust]
        angles = [math.radians(30. + self.tower_offset[Tower.ALPHA]),
                  math.radians(30. - self.tower_offset[Tower.BETA]),
                  math.radians(self.tower_offset[Tower.GAMMA])]
        self.tower_positions = [
            (-r[Tower.ALPHA] * math.cos(angles[Tower.ALPHA]),
             -r[Tower.ALPHA] * math.sin(angles[Tower.ALPHA])),
            (r[Tower.BETA] * math.cos(angles[Tower.BETA]),
             -r[Tower.BETA] * math.sin(angles[Tower.BETA])),
            (-r[Tower.GAMMA] * math.sin(angles[Tower.GAMMA]),
             r[Tower.GAMMA] * math.cos(angles[Tower.GAMMA]))]
        # Carriage height (mm) when the effector touches the bed origin
        self.tower_height = [
            self.endstop_offset[t] + self.height
            + self.carriage_mm_from_bottom((0., 0., 0.), t)
            for t in Tower]
    def carriage_mm_from_bottom(self, position, tower):
        tx, ty = self.tower_positions[tower]
        arm = self.arm_length(tower)
        val_under_sqrt = (arm**2 - (position[Axis.X] - tx)**2
                          - (position[Axis.Y] - ty)**2)
        if val_under_sqrt < 0.:
            raise UnreachableError(
                "Position (%.3f,%.3f,%.3f) is unreachable for tower %s"
                " (arm %.3f)" % (tuple(position[:3]) + (
                    Tower(tower).name.lower(), arm)))
        return position[Axis.Z] + math.sqrt(val_under_sqrt)
    def get_carriage_position(self, position):
        return [(self.tower_height[t] - self.carriage_mm_from_bottom(
            position, t)) * self.steps_per_unit[t] for t in Tower]
    def get_effector_position(self, carriage_positions):
        sphere_coords = [
            (self.tower_positions[t][0], self.tower_positions[t][1],
             self.tower_height[t]
             - carriage_positions[t] / self.steps_per_unit[t])
            for t in Tower]
        arm2 = [self.arm_length(t)**2 for t in Tower]
        try:
            return mathutil.trilateration(sphere_coords, arm2)
        except mathutil.TrilaterationError as e:
            logging.debug("Trilateration failed with sphere coords: %s,"
                          " arm2: %s" % (sphere_coords, arm2))
            raise UnreachableError(
                "Carriage positions %s are unreachable: %s"
                % (list(carriage_positions), e)) from e
    def compute_derivative(self, factor, carriage_positions, target,
                           perturb=DERIVATIVE_PERTURB):
        hi_params = self.copy()
        lo_params = self.copy()
        adjust = [0.] * MAX_FACTORS
        factor_map = [True] * MAX_FACTORS
        adjust[factor] = perturb
        hi_params.adjust(factor_map, adjust)
        adjust[factor] = -perturb
        lo_params.adjust(factor_map, adjust)
        pos_hi = hi_params.get_effector_position(carriage_positions)
        pos_lo = lo_params.get_effector_position(carriage_positions)
        error_hi = probe.ProbePoint(target, pos_hi).error
        error_lo = probe.ProbePoint(target, pos_lo).error
        return (error_hi - error_lo) / (2. * perturb)
    def adjust(self, factors, corrections):
        """Apply corrections to the active factors (in FACTORS order).

        'corrections' holds one value per active factor.  Afterwards the
        three-tower groups are shifted so their minimum is zero, with
        the shift folded into the matching common parameter.
        """
        factors = normalize_mask(factors)
        if len(corrections) < sum(factors):
            raise ValueError("Expected %d corrections, got %d"
                             % (sum(factors), len(corrections)))
        corrections = iter(corrections)
        def nxt(active):
            return next(corrections) if active else 0.
        for t in Tower:
            self.endstop_offset[t] += nxt(factors[t])
        self.radius += nxt(factors[3])
        self.tower_offset[Tower.ALPHA] += nxt(factors[4])
        self.tower_offset[Tower.BETA] += nxt(factors[5])
        self.diagonal_rod += nxt(factors[6])
        for t in Tower:
            self.steps_per_unit[t] += nxt(factors[7 + t])
        for t in Tower:
            self.radius_adjust[t] += nxt(factors[10 + t])
        for t in Tower:
            self.diagonal_rod_adjust[t] += nxt(factors[13 + t])
        self.height += nxt(factors[16])
        # Normalize factors that have a redundant degree of freedom
        self.height += mathutil.normalize(self.endstop_offset)
        self.diagonal_rod += mathutil.normalize(self.diagonal_rod_adjust)
        self.radius += mathutil.normalize(self.radius_adjust)
        mathutil.normalize(self.tower_offset)
        self.recompute_geometry()
    def get_params(self):
        params = {'diagonal_rod': self.diagonal_rod, 'radius': self.radius,
                  'height': self.height}
        for t, axis in zip(Tower, 'abc'):
            params['endstop_' + axis] = self.endstop_offset[t]
            params['angle_' + axis] = self.tower_offset[t]
            params['steps_per_unit_' + axis] = self.steps_per_unit[t]
            params['radius_adjust_' + axis] = self.radius_adjust[t]
            params['diagonal_rod_adjust_' + axis] = self.diagonal_rod_adjust[t]
        return params
    def new_geometry(self, params):
        def tower_list(prefix, current):
            return [params.get(prefix + axis, current[t])
                    for t, axis in zip(Tower, 'abc')]
        return DeltaGeometry(
            params.get('diagonal_rod', self.diagonal_rod),
            params.get('radius', self.radius),
            params.get('height', self.height),
            tower_list('endstop_', self.endstop_offset),
            tower_list('angle_', self.tower_offset),
            tower_list('steps_per_unit_', self.steps_per_unit),
            tower_list('radius_adjust_', self.radius_adjust),
            tower_list('diagonal_rod_adjust_', self.diagonal_rod_adjust))
    def is_close(self, other, tolerance=1e-6):
        params = self.get_params()
        other_params = other.get_params()
        return all(abs(params[k] - other_params[k]) <= tolerance
                   for k in params)
    def get_status_lines(self):
        lines = ["diagonal_rod: %.6f radius: %.6f height: %.6f"
                 % (self.diagonal_rod, self.radius, self.height)]
        for t, axis in zip(Tower, 'abc'):
            lines.append(
                "stepper_%s: endstop: %.4f angle: %.4f steps: %.4f"
                " radius_adjust: %.4f rod_adjust: %.4f" % (
                    axis, self.endstop_offset[t], self.tower_offset[t],
                    self.steps_per_unit[t], self.radius_adjust[t],
                    self.diagonal_rod_adjust[t]))
        return lines
    def __repr__(self):
        return "<DeltaGeometry %s>" % (" ".join(
            "%s=%.6f" % (k, v) for k, v in sorted(self.get_params().items())),)


######################################################################
# Config loading
######################################################################

def load_geometry(config):
    stepper_configs = [config.getsection('stepper_' + a) for a in 'abc']
    diagonal_rod = config.getfloat('diagonal_rod', above=0.)
    radius = config.getfloat('delta_radius', above=0.)
    height = config.getfloat('height', above=0.)
    endstops = []
    angles = []
    steps = []
    radius_adjusts = []
    rod_adjusts = []
    for sconfig in stepper_configs:
        endstops.append(sconfig.getfloat('endstop_offset', 0.))
        angles.append(sconfig.getfloat('tower_offset', 0.))
        steps.append(sconfig.getfloat('steps_per_unit', 1., above=0.))
        radius_adjusts.append(sconfig.getfloat('radius_adjust', 0.))
        rod_adjusts.append(sconfig.getfloat('diagonal_rod_adjust', 0.))
    for i, axis in enumerate('abc'):
        arm = diagonal_rod + rod_adjusts[i]
        eff_radius = radius + radius_adjusts[i]
        if arm <= eff_radius:
            raise config.error(
                "Arm length %.3f for stepper %s must be greater than its"
                " effective delta radius %.3f" % (arm, axis, eff_radius))
        margin = arm - eff_radius
        if margin < arm * 0.1:
            logging.warning("Small margin (%.3f) between arm length %.3f and"
                            " effective radius %.3f for stepper %s"
                            % (margin, arm, eff_radius, axis))
    geometry = DeltaGeometry(diagonal_rod, radius, height, endstops, angles,
                             steps, radius_adjusts, rod_adjusts)
    logging.info("Loaded delta geometry: %s" % (geometry,))
    return geometry
