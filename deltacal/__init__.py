# Least-squares geometry calibration for linear delta printers
#
# Copyright (C) 2016-2023  Kevin O'Connor <kevin@koconnor.net>
#
# This file may be distributed under the terms of the GNU GPLv3 license.
__version__ = '0.1.0'
