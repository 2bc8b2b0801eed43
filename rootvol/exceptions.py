# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Failures a bootstrap run can end with, and the process exit code each one
is reported as.
"""

from constantly import Values, ValueConstant


class ExitCodes(Values):
    """
    Process exit codes of ``rootvol-bootstrap``.  Both a resize and a skip
    count as success.
    """
    OK = ValueConstant(0)
    METADATA_UNAVAILABLE = ValueConstant(10)
    MALFORMED_METADATA = ValueConstant(11)
    CONFIGURATION_ERROR = ValueConstant(12)
    RESIZE_TIMEOUT = ValueConstant(13)
    FILESYSTEM_EXTEND_FAILED = ValueConstant(14)
    VOLUME_MODIFICATION_FAILED = ValueConstant(15)
    UNEXPECTED_ERROR = ValueConstant(70)


class RootvolError(Exception):
    """
    Base class for the failure kinds of a bootstrap run.

    :cvar ValueConstant exit_code: The ``ExitCodes`` constant reported when a
        run fails with this error.
    """
    exit_code = ExitCodes.UNEXPECTED_ERROR


class MetadataUnavailable(RootvolError):
    """
    The instance metadata service or the EC2 API could not be reached.  This
    is retried with backoff before it is surfaced.
    """
    exit_code = ExitCodes.METADATA_UNAVAILABLE


class MalformedMetadata(RootvolError):
    """
    A metadata response could not be parsed into the expected shape.
    """
    exit_code = ExitCodes.MALFORMED_METADATA


class ConfigurationError(RootvolError):
    """
    The configuration or rule table is malformed or ambiguous.
    """
    exit_code = ExitCodes.CONFIGURATION_ERROR


class ResizeTimeout(RootvolError):
    """
    A volume did not finish growing before the run's deadline.

    :ivar str volume_id: The volume being grown.
    :ivar int target_size_gib: The requested size.
    :ivar last_status: The last ``VolumeStatus`` seen, or ``None``.
    """
    exit_code = ExitCodes.RESIZE_TIMEOUT

    def __init__(self, volume_id, target_size_gib, last_status=None):
        RootvolError.__init__(self, volume_id, target_size_gib, last_status)
        self.volume_id = volume_id
        self.target_size_gib = target_size_gib
        self.last_status = last_status


class VolumeModificationFailed(RootvolError):
    """
    The provider reported the volume modification as failed.
    """
    exit_code = ExitCodes.VOLUME_MODIFICATION_FAILED

    def __init__(self, volume_id, status):
        RootvolError.__init__(self, volume_id, status)
        self.volume_id = volume_id
        self.status = status


class FilesystemExtendFailed(RootvolError):
    """
    The filesystem on the root device could not be grown to fill the device.

    :ivar str device_path: The device whose filesystem was being grown.
    """
    exit_code = ExitCodes.FILESYSTEM_EXTEND_FAILED

    def __init__(self, device_path, reason):
        RootvolError.__init__(self, device_path, reason)
        self.device_path = device_path
        self.reason = reason


def exit_code_for(exception):
    """
    :param Exception exception: The error a run failed with.

    :return: The ``ExitCodes`` constant for ``exception``.
    """
    if isinstance(exception, RootvolError):
        return exception.exit_code
    return ExitCodes.UNEXPECTED_ERROR
