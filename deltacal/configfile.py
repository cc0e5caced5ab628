# Code for reading calibration config files
#
# Copyright (C) 2016-2023  Kevin O'Connor <kevin@koconnor.net>
#
# This file may be distributed under the terms of the GNU GPLv3 license.
import configparser, logging, os

error = configparser.Error

class sentinel:
    pass

class ConfigWrapper:
    error = configparser.Error
    def __init__(self, fileconfig, section):
        self.fileconfig = fileconfig
        self.section = section
    def get_name(self):
        return self.section
    def _get_wrapper(self, parser, option, default, minval=None, maxval=None,
                     above=None, below=None):
        if not self.fileconfig.has_option(self.section, option):
            if default is not sentinel:
                return default
            raise error("Option '%s' in section '%s' must be specified"
                        % (option, self.section))
        try:
            v = parser(self.section, option)
        except self.error:
            raise
        except ValueError:
            raise error("Unable to parse option '%s' in section '%s'"
                        % (option, self.section))
        if minval is not None and v < minval:
            raise error("Option '%s' in section '%s' must have minimum of %s"
                        % (option, self.section, minval))
        if maxval is not None and v > maxval:
            raise error("Option '%s' in section '%s' must have maximum of %s"
                        % (option, self.section, maxval))
        if above is not None and v <= above:
            raise error("Option '%s' in section '%s' must be above %s"
                        % (option, self.section, above))
        if below is not None and v >= below:
            raise error("Option '%s' in section '%s' must be below %s"
                        % (option, self.section, below))
        return v
    def get(self, option, default=sentinel):
        return self._get_wrapper(self.fileconfig.get, option, default)
    def getint(self, option, default=sentinel, minval=None, maxval=None):
        return self._get_wrapper(self.fileconfig.getint, option, default,
                                 minval, maxval)
    def getfloat(self, option, default=sentinel, minval=None, maxval=None,
                 above=None, below=None):
        return self._get_wrapper(self.fileconfig.getfloat, option, default,
                                 minval, maxval, above, below)
    def getboolean(self, option, default=sentinel):
        return self._get_wrapper(self.fileconfig.getboolean, option, default)
    def getfloatlist(self, option, default=sentinel, sep=',', count=None):
        def fparser(section, option):
            value = self.fileconfig.get(section, option)
            res = [float(p.strip()) for p in value.split(sep) if p.strip()]
            if count is not None and len(res) != count:
                raise error("Option '%s' in section '%s' must have %d elements"
                            % (option, section, count))
            return res
        return self._get_wrapper(fparser, option, default)
    def getsection(self, section):
        return ConfigWrapper(self.fileconfig, section)

def parse_config(data, section='printer'):
    fileconfig = configparser.RawConfigParser(
        strict=False, inline_comment_prefixes=(';', '#'))
    fileconfig.read_string(data)
    return ConfigWrapper(fileconfig, section)

def read_config(filename, section='printer'):
    try:
        with open(filename, 'r') as f:
            data = f.read()
    except OSError as e:
        msg = "Unable to open config file %s" % (filename,)
        logging.exception(msg)
        raise error(msg) from e
    logging.info("Read config file %s (%d bytes)"
                 % (os.path.abspath(filename), len(data)))
    return parse_config(data, section)
