# Command line tool for running a delta calibration from a config file
#
# Copyright (C) 2016-2023  Kevin O'Connor <kevin@koconnor.net>
#
# This file may be distributed under the terms of the GNU GPLv3 license.
import sys, logging, argparse
from . import configfile
from .kinematics import delta
from .extras import probe, delta_calibrate

def setup_logging(verbose, logfile=None):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, filename=logfile,
        format='%(asctime)s %(levelname)s %(message)s')

def run(config_filename):
    config = configfile.read_config(config_filename)
    geometry = delta.load_geometry(config)
    calibrator = delta_calibrate.load_config(config)
    probing_data = probe.load_probing_data(
        config.getsection('delta_calibrate'))
    result = calibrator.calculate_params(geometry, probing_data)
    lines = ["Delta calibration: rms %.6f -> %.6f (min %.6f max %.6f)"
             % (result.initial_rms, result.rms, result.min, result.max)]
    lines.extend(result.geometry.get_status_lines())
    logging.info("\n".join(lines))
    return result

def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='deltacal',
        description="Calibrate delta printer geometry from probe points")
    parser.add_argument('config', help="config file with geometry and probes")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="enable debug messages")
    parser.add_argument('-l', '--logfile', default=None,
                        help="write log to file instead of stderr")
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.logfile)
    try:
        run(args.config)
    except configfile.error as e:
        logging.error("Config error: %s" % (e,))
        return 1
    except (delta_calibrate.CalibrationError, delta.UnreachableError) as e:
        logging.error("Calibration failed: %s" % (e,))
        return 1
    return 0

if __name__ == '__main__':
    sys.exit(main())
