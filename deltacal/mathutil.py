# Simple math helper functions
#
# Copyright (C) 2016-2023  Kevin O'Connor <kevin@koconnor.net>
#
# This file may be distributed under the terms of the GNU GPLv3 license.
import math, logging

# Pivots smaller than this (relative to the largest coefficient) are
# treated as zero by the Gauss-Jordan solver
PIVOT_EPSILON = 1e-12
# Radicands this close to zero are treated as tangent spheres
TRILATERATION_EPSILON = 1e-10

class TrilaterationError(ValueError):
    pass


######################################################################
# Matrix helper functions for 3x1 matrices
######################################################################

def matrix_cross(m1, m2):
    return [m1[1] * m2[2] - m1[2] * m2[1],
            m1[2] * m2[0] - m1[0] * m2[2],
            m1[0] * m2[1] - m1[1] * m2[0]]

def matrix_dot(m1, m2):
    return m1[0] * m2[0] + m1[1] * m2[1] + m1[2] * m2[2]

def matrix_magsq(m1):
    return m1[0]**2 + m1[1]**2 + m1[2]**2

def matrix_add(m1, m2):
    return [m1[0] + m2[0], m1[1] + m2[1], m1[2] + m2[2]]

def matrix_sub(m1, m2):
    return [m1[0] - m2[0], m1[1] - m2[1], m1[2] - m2[2]]

def matrix_mul(m1, s):
    return [m1[0] * s, m1[1] * s, m1[2] * s]

# Per-axis rate of change between two vectors separated by 'd'
def vector_derivate(va, vb, d):
    return [(vb[0] - va[0]) / d, (vb[1] - va[1]) / d, (vb[2] - va[2]) / d]

def vector_square(v):
    return [v[0]**2, v[1]**2, v[2]**2]

# Shift a list so its smallest element is zero; returns the amount removed
def normalize(values):
    factor = min(values)
    for i in range(len(values)):
        values[i] -= factor
    return factor


######################################################################
# Trilateration
######################################################################

def trilateration_solutions(sphere_coords, radius2):
    """Return both points at distance sqrt(radius2[i]) from each center.

    The two solutions are mirrored across the plane containing the
    three sphere centers.
    """
    sphere_coord1, sphere_coord2, sphere_coord3 = sphere_coords
    s21 = matrix_sub(sphere_coord2, sphere_coord1)
    s31 = matrix_sub(sphere_coord3, sphere_coord1)

    d = math.sqrt(matrix_magsq(s21))
    if d == 0.:
        raise TrilaterationError("Coincident sphere centers %s" % (
            sphere_coords,))
    ex = matrix_mul(s21, 1. / d)
    i = matrix_dot(ex, s31)
    vect_ey = matrix_sub(s31, matrix_mul(ex, i))
    ey_mag = math.sqrt(matrix_magsq(vect_ey))
    if ey_mag == 0.:
        raise TrilaterationError("Collinear sphere centers %s" % (
            sphere_coords,))
    ey = matrix_mul(vect_ey, 1. / ey_mag)
    ez = matrix_cross(ex, ey)
    j = matrix_dot(ey, s31)

    x = (radius2[0] - radius2[1] + d**2) / (2. * d)
    y = (radius2[0] - radius2[2] - x**2 + (x-i)**2 + j**2) / (2. * j)
    b = radius2[0] - x**2 - y**2
    if b < 0.:
        if b < -TRILATERATION_EPSILON:
            raise TrilaterationError(
                "Spheres do not intersect (radicand %.6f)" % (b,))
        b = 0.
    z = math.sqrt(b)

    middle = matrix_add(sphere_coord1,
                        matrix_add(matrix_mul(ex, x), matrix_mul(ey, y)))
    ez_z = matrix_mul(ez, z)
    return matrix_add(middle, ez_z), matrix_sub(middle, ez_z)

def trilateration(sphere_coords, radius2):
    # The effector hangs below the carriages, so take the lower point
    sol1, sol2 = trilateration_solutions(sphere_coords, radius2)
    if sol1[2] < sol2[2]:
        return sol1
    return sol2


######################################################################
# Dense linear system solver
######################################################################

class Matrix:
    def __init__(self, rows, cols):
        self.rows = rows
        self.cols = cols
        self.data = [[0.] * cols for i in range(rows)]
    def swap_rows(self, i, j, num_cols):
        if i != j:
            data = self.data
            for k in range(num_cols):
                data[i][k], data[j][k] = data[j][k], data[i][k]
    def gauss_jordan(self, num_rows):
        """Solve the augmented system held in the first num_rows rows.

        The matrix must have at least num_rows + 1 columns; column
        num_rows holds the right hand side.  The matrix contents are
        destroyed.  A column without a usable pivot produces a 'nan'
        entry in the returned solution.
        """
        data = self.data
        scale = max([abs(data[r][c])
                     for r in range(num_rows) for c in range(num_rows)]
                    or [0.])
        min_pivot = scale * PIVOT_EPSILON
        for i in range(num_rows):
            # Swap the rows around for stable Gauss-Jordan elimination
            vmax = abs(data[i][i])
            for j in range(i + 1, num_rows):
                rmax = abs(data[j][i])
                if rmax > vmax:
                    self.swap_rows(i, j, num_rows + 1)
                    vmax = rmax
            v = data[i][i]
            if abs(v) <= min_pivot:
                logging.debug("Gauss-Jordan: negligible pivot %.6e in column %d"
                              % (v, i))
                data[i][i] = 0.
                continue
            # Use row i to eliminate the ith element from all other rows
            for j in range(num_rows):
                if j == i:
                    continue
                factor = data[j][i] / v
                data[j][i] = 0.
                for k in range(i + 1, num_rows + 1):
                    data[j][k] -= data[i][k] * factor
        solution = []
        for i in range(num_rows):
            v = data[i][i]
            if v == 0.:
                solution.append(float('nan'))
            else:
                solution.append(data[i][num_rows] / v)
        return solution


######################################################################
# Probe point planning
######################################################################

# Return 'n' XY positions on an Archimedean spiral covering a disc
def get_spiral_points(n, radius):
    if n <= 0:
        return []
    a = radius / (2. * math.sqrt(n * math.pi))
    step_length = radius * radius / (2. * a * n)
    points = []
    for i in range(n):
        angle = math.sqrt(2. * (i * step_length) / a)
        r = angle * a
        points.append((r * math.cos(angle), r * math.sin(angle)))
    return points
