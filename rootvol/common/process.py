# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.common.test.test_process -*-

"""
Run the OS tools (``lsblk``, ``findmnt``, ``growpart``, ``resize2fs``,
``xfs_growfs``) that inspect and grow the root filesystem.
"""

from subprocess import PIPE, STDOUT, CalledProcessError, Popen

from eliot import log_message, start_action
from pyrsistent import PClass, field

_RUN_PROCESS = u"rootvol:common:run_process"


class _CalledProcessError(CalledProcessError):
    """
    A ``CalledProcessError`` whose string form ends with the command's
    output, so that logged failures say why the tool failed.
    """
    def __str__(self):
        output = (self.output or b"").decode("utf-8", "replace")
        return u"{} and output:\n{}".format(
            CalledProcessError.__str__(self),
            u"\n".join(u"    |" + line for line in output.splitlines()),
        )


class ProcessResult(PClass):
    """
    A finished child process.

    :ivar list command: The argument list it was started with.
    :ivar bytes output: Its standard output and standard error, interleaved.
    :ivar int status: Its exit status.
    """
    command = field(type=list, mandatory=True)
    output = field(type=bytes, mandatory=True)
    status = field(type=int, mandatory=True)


def run_process(command, *args, **kwargs):
    """
    Run a child process to completion inside an Eliot action, logging its
    output.

    :param list command: An argument list to use to launch the child process.
        Further arguments are passed to ``Popen``.

    :raise CalledProcessError: If the child process has a non-zero exit status.
    :return: A ``ProcessResult``.
    """
    kwargs.update(stdout=PIPE, stderr=STDOUT)
    with start_action(action_type=_RUN_PROCESS, command=command):
        with Popen(command, *args, **kwargs) as process:
            output, _ = process.communicate()
        result = ProcessResult(
            command=command, output=output, status=process.returncode)
        log_message(
            message_type=_RUN_PROCESS + u":result",
            status=result.status,
            output=output.decode("utf-8", "replace"),
        )
        if result.status:
            raise _CalledProcessError(
                returncode=result.status, cmd=command, output=output)
    return result
