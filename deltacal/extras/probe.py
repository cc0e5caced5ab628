# Probe measurement storage for delta calibration
#
# Copyright (C) 2017-2021  Kevin O'Connor <kevin@koconnor.net>
#
# This file may be distributed under the terms of the GNU GPLv3 license.
import math, logging, collections

# A single probe measurement: the commanded position and the position
# actually measured.  The 'error' is the signed sum of the per-axis
# deltas (not a distance) and is used directly as the fit residual.
class ProbePoint(collections.namedtuple('ProbePoint', ('target', 'actual'))):
    __slots__ = ()
    def __new__(cls, target, actual):
        return super().__new__(cls, tuple(target), tuple(actual))
    @property
    def x(self):
        return self.actual[0]
    @property
    def y(self):
        return self.actual[1]
    @property
    def z(self):
        return self.actual[2]
    @property
    def delta_vector(self):
        return tuple(a - t for a, t in zip(self.actual, self.target))
    @property
    def delta_magnitude(self):
        return math.sqrt(sum(d**2 for d in self.delta_vector))
    @property
    def error(self):
        return sum(self.delta_vector)

class ProbingData:
    def __init__(self, points=()):
        self.points = []
        self.max = self.min = self.rms = None
        self.sum_of_squares = 0.
        self.callbacks = []
        for point in points:
            self.add_point(point)
    def __len__(self):
        return len(self.points)
    def __iter__(self):
        return iter(self.points)
    def __getitem__(self, index):
        return self.points[index]
    def register_callback(self, callback):
        self.callbacks.append(callback)
    def add_point(self, point):
        self.points.append(point)
        error = point.error
        if self.max is None or error > self.max:
            self.max = error
        if self.min is None or error < self.min:
            self.min = error
        self.sum_of_squares += error * error
        self.rms = math.sqrt(self.sum_of_squares / len(self.points))
        for cb in self.callbacks:
            cb(self)
    def get_status(self):
        return {'count': len(self.points), 'max': self.max, 'min': self.min,
                'rms': self.rms}

# Load "targetN" / "actualN" pairs from a config section
def load_probing_data(config):
    data = ProbingData()
    for i in range(999):
        target = config.getfloatlist("target%d" % (i,), None, count=3)
        if target is None:
            break
        actual = config.getfloatlist("actual%d" % (i,), count=3)
        data.add_point(ProbePoint(target, actual))
    logging.info("Loaded %d probe points (rms error %s)"
                 % (len(data), "%.6f" % (data.rms,)
                    if data.rms is not None else "n/a"))
    return data
