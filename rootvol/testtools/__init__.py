# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Various utilities to help with unit testing.
"""

import io
import sys
from subprocess import CalledProcessError

from bitmath import MiB

from zope.interface import implementer

from twisted.python.logfile import LogFile

from .. import __version__
from ..common.process import ProcessResult
from ..executor import IFilesystemExtender, IVolumeAPI, ModificationInProgress
from ..metadata import IInstanceMetadata
from ..model import VolumeStatus
from ._base import TestCase

__all__ = [
    'TestCase',
    'FakeInstanceMetadata',
    'FakeVolumeAPI',
    'FakeFilesystemExtender',
    'FakeProcessRunner',
    'FakeClock',
    'FakeSysModule',
    'StandardOptionsTestsMixin',
    'help_problems',
]


@implementer(IInstanceMetadata)
class FakeInstanceMetadata(object):
    """
    An in-memory ``IInstanceMetadata``.

    :ivar list resolved: The instance identifiers ``resolve`` was called
        with.
    :ivar list deadlines: The deadline of every call.
    """
    def __init__(self, descriptor, error=None):
        """
        :param InstanceDescriptor descriptor: What ``resolve`` returns.
        :param Exception error: If given, raised by ``compute_instance_id``
            and ``resolve`` instead.
        """
        self.descriptor = descriptor
        self.error = error
        self.resolved = []
        self.deadlines = []

    def compute_instance_id(self, deadline=None):
        self.deadlines.append(deadline)
        if self.error is not None:
            raise self.error
        return self.descriptor.instance_id

    def resolve(self, instance_id, deadline=None):
        self.resolved.append(instance_id)
        self.deadlines.append(deadline)
        if self.error is not None:
            raise self.error
        return self.descriptor


@implementer(IVolumeAPI)
class FakeVolumeAPI(object):
    """
    An in-memory ``IVolumeAPI``.

    Each grow starts a modification that goes through the scripted
    ``modification_states``, one per ``describe_volume`` call, and then
    stays in the last one.

    :ivar dict sizes: Volume identifier to size in GiB.
    :ivar dict modifications: Volume identifier to the modification states
        still to be reported.
    :ivar list grow_calls: The arguments of every ``grow_volume`` call.
    :ivar list describe_calls: The volume of every ``describe_volume`` call.
    """
    def __init__(self, sizes, modification_states=(u"modifying",
                                                   u"optimizing"),
                 in_progress=False, error=None):
        """
        :param dict sizes: Volume identifier to size in GiB.
        :param modification_states: The states each new modification is
            reported in.
        :param bool in_progress: If ``True``, ``grow_volume`` raises
            ``ModificationInProgress`` without changing anything.
        :param Exception error: If given, raised by every call.
        """
        self.sizes = dict(sizes)
        self.modification_states = list(modification_states)
        self.in_progress = in_progress
        self.error = error
        self.modifications = {}
        self.grow_calls = []
        self.describe_calls = []

    def describe_volume(self, volume_id):
        self.describe_calls.append(volume_id)
        if self.error is not None:
            raise self.error
        states = self.modifications.get(volume_id)
        if not states:
            state = None
        elif len(states) > 1:
            state = states.pop(0)
        else:
            state = states[0]
        return VolumeStatus(
            volume_id=volume_id,
            state=u"in-use",
            size_gib=self.sizes[volume_id],
            modification_state=state,
        )

    def grow_volume(self, volume_id, size_gib, iops=None, throughput=None):
        self.grow_calls.append((volume_id, size_gib, iops, throughput))
        if self.error is not None:
            raise self.error
        if self.in_progress:
            raise ModificationInProgress(volume_id)
        self.sizes[volume_id] = size_gib
        self.modifications[volume_id] = list(self.modification_states)


@implementer(IFilesystemExtender)
class FakeFilesystemExtender(object):
    """
    An in-memory ``IFilesystemExtender``.

    :ivar bool needed: What ``needs_extension`` reports.  A successful
        ``extend`` clears it.
    :ivar list extended: The device of every ``extend`` call.
    """
    def __init__(self, needed=False, error=None):
        self.needed = needed
        self.error = error
        self.extended = []

    def needs_extension(self, device_path):
        return self.needed

    def extend(self, device_path):
        self.extended.append(device_path)
        if self.error is not None:
            raise self.error
        self.needed = False


class FakeProcessRunner(object):
    """
    A replacement for ``run_process`` which returns canned output.

    :ivar list commands: Every command run, in order.
    """
    def __init__(self, responses):
        """
        :param responses: A list of ``(key, response)`` pairs.  ``key`` is a
            tuple; a command matches it when the command starts with the first
            element and contains every other element.  ``response`` is the
            ``bytes`` output, or a ``(status, bytes)`` tuple for a failing
            command.  The first matching pair is used.
        """
        self.responses = responses
        self.commands = []

    def _response(self, command):
        for key, response in self.responses:
            if command[0] == key[0] and all(
                    part in command for part in key[1:]):
                return response
        raise AssertionError("Unexpected command: {!r}".format(command))

    def __call__(self, command, *args, **kwargs):
        self.commands.append(command)
        response = self._response(command)
        if isinstance(response, tuple):
            status, output = response
            raise CalledProcessError(
                returncode=status, cmd=command, output=output)
        return ProcessResult(command=command, output=response, status=0)


class FakeClock(object):
    """
    A clock which only moves when something sleeps.

    :ivar float now: The current time.
    :ivar list sleeps: Every interval slept.
    """
    def __init__(self, now=1000.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def help_problems(command_name, help_text):
    """Identify and return a list of help text problems.

    :param str command_name: The name of the command which should appear in
        the help text.
    :param str help_text: The full help text to be inspected.
    :return: A list of problems found with the supplied ``help_text``.
    :rtype: list
    """
    problems = []
    expected_start = u'Usage: {command}'.format(command=command_name)
    if not help_text.startswith(expected_start):
        problems.append(
            'Does not begin with {expected}. Found {actual} instead'.format(
                expected=repr(expected_start),
                actual=repr(help_text[:len(expected_start)])
            )
        )
    return problems


class FakeSysModule(object):
    """A ``sys`` like substitute.

    For use in testing the handling of `argv`, `stdout` and `stderr` by command
    line scripts.

    :ivar list argv: See ``__init__``
    :ivar stdout: A :py:class:`io.StringIO` object representing standard
        output.
    :ivar stderr: A :py:class:`io.StringIO` object representing standard
        error.
    """
    def __init__(self, argv=None):
        """Initialise the fake sys module.

        :param list argv: The arguments list which should be exposed as
            ``sys.argv``.
        """
        if argv is None:
            argv = []
        self.argv = argv
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()


class StandardOptionsTestsMixin(object):
    """Tests for classes decorated with ``rootvol_standard_options``.

    :ivar usage.Options options: The ``usage.Options`` class under test.
    """
    options = None

    def _parsed(self, arguments, **kwargs):
        options = self.options(**kwargs)
        # Required arguments are not what is being tested here.
        self.patch(options, "parseArgs", lambda: None)
        options.parseOptions(arguments)
        return options

    def test_sys_module_default(self):
        """
        ``rootvol_standard_options`` adds a ``_sys_module`` attribute which is
        ``sys`` by default.
        """
        self.assertIs(sys, self.options()._sys_module)

    def test_sys_module_override(self):
        """
        ``rootvol_standard_options`` adds a ``sys_module`` argument to the
        initialiser which is assigned to ``_sys_module``.
        """
        fake_sys_module = FakeSysModule()
        self.assertIs(
            fake_sys_module,
            self.options(sys_module=fake_sys_module)._sys_module
        )

    def test_version(self):
        """
        Commands have a `--version` option which prints the current version
        string to stdout and causes the command to exit with status `0`.
        """
        sys = FakeSysModule()
        error = self.assertRaises(
            SystemExit,
            self.options(sys_module=sys).parseOptions,
            ['--version']
        )
        self.assertEqual(
            (__version__ + '\n', 0),
            (sys.stdout.getvalue(), error.code)
        )

    def test_verbosity_default(self):
        """
        Commands have `verbosity` of `0` by default.
        """
        self.assertEqual(0, self.options()['verbosity'])

    def test_verbosity_multiple(self):
        """
        `--verbose` and `-v` each increase the verbosity by `1`.
        """
        self.assertEqual(
            2, self._parsed(['-v', '--verbose'])['verbosity'])

    def test_logfile_default(self):
        """
        `--logfile` is optional and if omitted, the default value will be
        ``stdout``.
        """
        sys = FakeSysModule()
        options = self._parsed([], sys_module=sys)
        self.assertIs(sys.stdout, options['logfile'])

    def test_logfile_override(self):
        """
        If `--logfile` is supplied, its value is stored as a rotating
        ``twisted.python.logfile.LogFile``, creating its directory.
        """
        expected = self.make_temporary_directory().descendant(
            [u"log", u"rootvol.log"])
        options = self._parsed(['--logfile={}'.format(expected.path)])
        logfile = options['logfile']
        self.addCleanup(logfile.close)
        self.assertEqual(
            (LogFile, expected.path, int(MiB(100).to_Byte().value), 5),
            (logfile.__class__, logfile.path,
             logfile.rotateLength, logfile.maxRotatedFiles)
        )
