# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.test.test_script -*-

"""Helpers for rootvol shell commands."""

import sys

from bitmath import MiB

from eliot import to_file, write_traceback

from twisted.python import usage
from twisted.python.logfile import LogFile
from twisted.python.filepath import FilePath

from zope.interface import Interface

from .. import __version__
from ..exceptions import ExitCodes


__all__ = [
    'rootvol_standard_options',
    'ICommandLineScript',
    'RootvolScriptRunner',
]


# ``--logfile`` rotation.
LOGFILE_LENGTH = int(MiB(100).to_Byte().value)
LOGFILE_COUNT = 5


def _opt_version(self):
    """Print the program's version and exit."""
    self._sys_module.stdout.write(__version__ + '\n')
    raise SystemExit(0)


def _opt_verbose(self):
    """Turn on verbose logging.  May be given more than once."""
    self['verbosity'] += 1


def _opt_logfile(self, logfile_path):
    """
    Log to a file, rotated by size, instead of ``stdout``.  The directory is
    created if missing.
    """
    logfile = FilePath(logfile_path)
    if not logfile.parent().exists():
        logfile.parent().makedirs()
    self['logfile'] = LogFile.fromFullPath(
        logfile.path,
        rotateLength=LOGFILE_LENGTH,
        maxRotatedFiles=LOGFILE_COUNT,
    )


def rootvol_standard_options(cls):
    """
    Class decorator giving a ``usage.Options`` subclass the options every
    rootvol command has: ``--version``, ``--verbose``/``-v`` and
    ``--logfile``.

    The decorated initialiser accepts a ``sys_module`` keyword argument, a
    ``sys`` replacement for tests.

    :param type cls: The `class` to decorate.
    :return: The decorated `class`.
    """
    original_init = cls.__init__

    def __init__(self, *args, **kwargs):
        self._sys_module = kwargs.pop('sys_module', sys)
        self['verbosity'] = 0
        self['logfile'] = self._sys_module.stdout
        original_init(self, *args, **kwargs)

    cls.__init__ = __init__
    cls.opt_version = _opt_version
    cls.opt_verbose = cls.opt_v = _opt_verbose
    cls.opt_logfile = _opt_logfile
    return cls


class ICommandLineScript(Interface):
    """A script which can be run by ``RootvolScriptRunner``."""
    def main(options):
        """
        :param dict options: A dictionary of configuration options.
        :return: The process exit status as ``int``.
        """


class RootvolScriptRunner(object):
    """
    Parse the command line, set up logging, run a script to completion and
    exit with its status.

    :ivar ICommandLineScript script: See ``script`` of ``__init__``.
    """
    def __init__(self, script, options, logging=True, sys_module=None):
        """
        :param ICommandLineScript script: The script object to be run.
        :param usage.Options options: An option parser object.
        :param logging: If ``True``, log to stdout or the ``--logfile``;
            otherwise don't log.
        :param sys_module: An optional ``sys`` like module for use in
            testing. Defaults to ``sys``.
        """
        self.script = script
        self.options = options
        self.logging = logging
        if sys_module is None:
            sys_module = sys
        self.sys_module = sys_module

    def _parse_options(self, arguments):
        """
        Parse ``arguments`` with the options object.  A ``UsageError`` is
        reported on stderr along with the help text, and the process exits
        with status 1.

        :param list arguments: The command line arguments to be parsed.
        :return: The populated options object.
        """
        try:
            self.options.parseOptions(arguments)
        except usage.UsageError as e:
            self.sys_module.stderr.write(str(self.options))
            self.sys_module.stderr.write(u'ERROR: {}\n'.format(e))
            raise SystemExit(1)
        return self.options

    def main(self):
        """
        Run the script and exit.  An exception escaping the script is logged
        and reported as ``ExitCodes.UNEXPECTED_ERROR``.
        """
        # Parse first: --version and usage errors exit before anything is
        # logged.
        options = self._parse_options(self.sys_module.argv[1:])

        if self.logging:
            to_file(options['logfile'])

        try:
            status = self.script.main(options)
        except Exception:
            write_traceback()
            status = ExitCodes.UNEXPECTED_ERROR.value
        raise SystemExit(status)
