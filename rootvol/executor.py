# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.test.test_executor -*-

"""
Apply a ``ResizeDecision`` to the live root volume and its filesystem.

Growing happens in two phases: the EBS volume is modified through the EC2
API, then the partition and filesystem on it are grown online.  A run that
crashes between the two phases leaves a volume that is already large
enough; the next run notices the filesystem still lags behind the device and
performs only the second phase.  Nothing here remembers what an earlier run
did: every branch is taken on freshly queried state.
"""

import json
import os
import re
import time
from subprocess import CalledProcessError

from bitmath import GiB
from botocore.exceptions import ClientError
from zope.interface import implementer, Interface

from ._aws import (
    boto3_log, error_code, INCORRECT_MODIFICATION_STATE,
    MODIFICATION_NOT_FOUND,
)
from ._logging import (
    APPLY_DECISION, EXTEND_FILESYSTEM, RECOVERING_FILESYSTEM,
    ALREADY_SATISFIED, WAITING_FOR_VOLUME_MODIFICATION,
    MODIFICATION_ALREADY_IN_PROGRESS,
)
from .common import backoff, Deadline, LoopExceeded, poll_until, run_process
from .exceptions import (
    ResizeTimeout, VolumeModificationFailed, FilesystemExtendFailed,
)
from .model import NOOP, ResizeOutcome, VolumeStatus

VOLUME_MODIFICATION_TIMEOUT = 300

# Poll intervals while waiting for a modification, in seconds.
POLL_START = 2.0
POLL_CAP = 30.0

# Modification states in which the new size can be used by the OS.  EBS
# keeps optimizing in the background, but the block device has grown.
USABLE_MODIFICATION_STATES = frozenset([None, u"optimizing", u"completed"])
FAILED_MODIFICATION_STATE = u"failed"


class ModificationInProgress(Exception):
    """
    EBS refused a modification because another one has not finished.
    """
    def __init__(self, volume_id):
        Exception.__init__(self, volume_id)
        self.volume_id = volume_id


class IVolumeAPI(Interface):
    """
    The provider operations the executor needs for one volume.
    """

    def describe_volume(volume_id):
        """
        Query the live state of a volume.

        :param str volume_id: The volume identifier.

        :returns: A ``VolumeStatus``.
        """

    def grow_volume(volume_id, size_gib, iops=None, throughput=None):
        """
        Ask the provider to grow a volume.  The provider finishes the
        modification in the background.

        :param str volume_id: The volume identifier.
        :param int size_gib: The new size.
        :param iops: The gp3 IOPS to set, or ``None``.
        :param throughput: The gp3 throughput to set, or ``None``.

        :raise ModificationInProgress: If an earlier modification has not
            finished yet.
        """


class IFilesystemExtender(Interface):
    """
    The local OS operations that grow the root filesystem.
    """

    def needs_extension(device_path):
        """
        Check, without changing anything, whether the root filesystem is
        smaller than the device it lives on.

        :param str device_path: The root device as named by the provider.

        :returns: ``bool``.
        """

    def extend(device_path):
        """
        Grow the root partition (if any) and filesystem to fill the device,
        online.

        :param str device_path: The root device as named by the provider.

        :raise FilesystemExtendFailed: If growing fails.
        """


def _latest_modification(modifications):
    if not modifications:
        return None
    return max(
        modifications, key=lambda m: m.get(u"StartTime") or 0
    )


@implementer(IVolumeAPI)
class EBSVolumeAPI(object):
    """
    An ``IVolumeAPI`` which talks to EBS using boto3.
    """
    def __init__(self, ec2_client):
        """
        :param ec2_client: A boto3 EC2 client.
        """
        self.connection = ec2_client

    @boto3_log
    def describe_volume(self, volume_id):
        volume = self.connection.describe_volumes(
            VolumeIds=[volume_id])[u"Volumes"][0]
        try:
            modifications = self.connection.describe_volumes_modifications(
                VolumeIds=[volume_id])[u"VolumesModifications"]
        except ClientError as e:
            # Volumes that were never modified have no modification record.
            if error_code(e) != MODIFICATION_NOT_FOUND:
                raise
            modifications = []
        modification = _latest_modification(modifications)
        if modification is None:
            modification_state = None
        else:
            modification_state = modification[u"ModificationState"]
        return VolumeStatus(
            volume_id=volume[u"VolumeId"],
            state=volume[u"State"],
            size_gib=volume[u"Size"],
            modification_state=modification_state,
        )

    @boto3_log
    def grow_volume(self, volume_id, size_gib, iops=None, throughput=None):
        arguments = dict(VolumeId=volume_id, Size=size_gib)
        if iops is not None:
            arguments[u"Iops"] = iops
        if throughput is not None:
            arguments[u"Throughput"] = throughput
        if iops is not None or throughput is not None:
            arguments[u"VolumeType"] = u"gp3"
        try:
            self.connection.modify_volume(**arguments)
        except ClientError as e:
            if error_code(e) == INCORRECT_MODIFICATION_STATE:
                raise ModificationInProgress(volume_id)
            raise


# Filesystems that can be grown while mounted, and the command that does it.
# ``{device}`` is the block device, ``{mount_point}`` where it is mounted.
_GROW_COMMANDS = {
    u"ext2": [u"resize2fs", u"{device}"],
    u"ext3": [u"resize2fs", u"{device}"],
    u"ext4": [u"resize2fs", u"{device}"],
    u"xfs": [u"xfs_growfs", u"-d", u"{mount_point}"],
}

# Unused space at the end of a disk below which a partition counts as
# filling it; partition tables keep a little space for themselves.
PARTITION_SLACK = int(GiB(1).to_Byte().value)

# A filesystem reporting less than this share of its device as its size has
# not been grown.  Filesystem metadata accounts for a few percent.
FILESYSTEM_FILL_RATIO = 0.9

_PARTITION_NAME = re.compile(r"^(?P<disk>.+?)p?(?P<number>\d+)$")


def _growpart_unchanged(error):
    """
    ``growpart`` exits 1 and prints ``NOCHANGE`` when the partition already
    fills the disk.
    """
    return error.returncode == 1 and b"NOCHANGE" in (error.output or b"")


@implementer(IFilesystemExtender)
class LocalFilesystemExtender(object):
    """
    An ``IFilesystemExtender`` that grows the filesystem mounted at
    ``mount_point`` using ``growpart``, ``resize2fs`` and ``xfs_growfs``.

    On Nitro instances the provider's device name (``/dev/xvda``) is not the
    name the OS uses (``/dev/nvme0n1``), so the device is found through the
    mount point rather than the given device path.
    """
    def __init__(self, mount_point=u"/", run=run_process,
                 statvfs=os.statvfs):
        self.mount_point = mount_point
        self._run = run
        self._statvfs = statvfs

    def _json(self, command, device_path):
        try:
            output = self._run(command).output
        except CalledProcessError as e:
            raise FilesystemExtendFailed(device_path, str(e))
        try:
            return json.loads(output.decode("utf-8"))
        except ValueError as e:
            raise FilesystemExtendFailed(
                device_path, u"Could not parse output of {}: {}".format(
                    command[0], e))

    def _root_filesystem(self, device_path):
        """
        :return: The block device and filesystem type mounted at the mount
            point.
        """
        found = self._json(
            [u"findmnt", u"--json", u"--output", u"SOURCE,FSTYPE",
             u"--target", self.mount_point],
            device_path,
        )
        try:
            filesystem = found[u"filesystems"][0]
            return filesystem[u"source"], filesystem[u"fstype"]
        except (KeyError, IndexError, TypeError):
            raise FilesystemExtendFailed(
                device_path, u"No filesystem mounted at {}".format(
                    self.mount_point))

    def _block_device(self, device, device_path):
        """
        :return: The ``lsblk`` entry of ``device``.
        """
        listed = self._json(
            [u"lsblk", u"--json", u"--bytes", u"--nodeps",
             u"--output", u"NAME,PKNAME,SIZE,TYPE", device],
            device_path,
        )
        try:
            entry = listed[u"blockdevices"][0]
            entry[u"size"] = int(entry[u"size"])
        except (KeyError, IndexError, TypeError, ValueError):
            raise FilesystemExtendFailed(
                device_path, u"Could not describe {}".format(device))
        return entry

    def _layout(self, device_path):
        """
        :return: A tuple of the filesystem's device, filesystem type, its
            ``lsblk`` entry and the ``lsblk`` entry of the disk holding it
            (the same entry when the filesystem is on the whole disk).
        """
        source, fstype = self._root_filesystem(device_path)
        entry = self._block_device(source, device_path)
        if entry.get(u"type") == u"part":
            disk = self._block_device(
                u"/dev/" + entry[u"pkname"], device_path)
        else:
            disk = entry
        return source, fstype, entry, disk

    def needs_extension(self, device_path):
        source, fstype, entry, disk = self._layout(device_path)
        if disk[u"size"] - entry[u"size"] > PARTITION_SLACK:
            return True
        stat = self._statvfs(self.mount_point)
        filesystem_size = stat.f_blocks * stat.f_frsize
        return filesystem_size < entry[u"size"] * FILESYSTEM_FILL_RATIO

    def _growpart(self, entry, device_path):
        match = _PARTITION_NAME.match(entry[u"name"])
        if match is None:
            raise FilesystemExtendFailed(
                device_path, u"Cannot find partition number of {}".format(
                    entry[u"name"]))
        try:
            self._run([
                u"growpart", u"/dev/" + entry[u"pkname"],
                match.group(u"number"),
            ])
        except CalledProcessError as e:
            if not _growpart_unchanged(e):
                raise FilesystemExtendFailed(device_path, str(e))

    def extend(self, device_path):
        source, fstype, entry, disk = self._layout(device_path)
        if fstype not in _GROW_COMMANDS:
            raise FilesystemExtendFailed(
                device_path, u"Cannot grow {} filesystems online".format(
                    fstype))
        if entry.get(u"type") == u"part":
            self._growpart(entry, device_path)
        command = [
            argument.format(device=source, mount_point=self.mount_point)
            for argument in _GROW_COMMANDS[fstype]
        ]
        try:
            self._run(command)
        except CalledProcessError as e:
            raise FilesystemExtendFailed(device_path, str(e))


def _modification_steps():
    return backoff(step=POLL_START, maximum_step=POLL_CAP, timeout=None)


class ResizeExecutor(object):
    """
    Apply resize decisions to a volume.

    :ivar IVolumeAPI volume_api: The provider.
    :ivar IFilesystemExtender extender: The local OS.
    """
    def __init__(self, volume_api, extender, clock=time.time, sleep=None,
                 timeout=VOLUME_MODIFICATION_TIMEOUT,
                 steps=_modification_steps):
        """
        :param clock: A nullary callable returning the current time.
        :param sleep: A replacement for ``time.sleep``.
        :param timeout: Seconds to wait for a modification when no deadline
            is passed to ``apply``.
        :param steps: A nullary callable returning poll intervals.
        """
        self.volume_api = volume_api
        self.extender = extender
        self.clock = clock
        self.sleep = sleep
        self.timeout = timeout
        self._steps = steps

    def _elapsed_ms(self, start):
        return max(0, int((self.clock() - start) * 1000))

    def apply(self, volume_id, current_size_gib, decision, device_path,
              deadline=None):
        """
        Make the volume at least as large as ``decision`` asks.

        :param str volume_id: The volume to grow.
        :param int current_size_gib: The volume size the provider reported
            at the start of the run.
        :param ResizeDecision decision: What to do.
        :param str device_path: The root device, passed to the extender.
        :param Deadline deadline: When to give up waiting for the provider.

        :raise ResizeTimeout: If the modification is not usable before the
            deadline.
        :raise VolumeModificationFailed: If the provider fails the
            modification.
        :raise FilesystemExtendFailed: If the filesystem cannot be grown.
        :return: A ``ResizeOutcome``, or ``NOOP`` if nothing was changed.
        """
        if not decision.is_resize:
            return NOOP
        if deadline is None:
            deadline = Deadline.after(self.timeout, clock=self.clock)
        start = self.clock()
        target = decision.target_size_gib

        with APPLY_DECISION(volume_id=volume_id,
                            current_size_gib=current_size_gib,
                            device_path=device_path):
            if target <= current_size_gib:
                # Never shrink.  The volume may still have been grown by an
                # earlier run that did not get to the filesystem.
                if not self.extender.needs_extension(device_path):
                    ALREADY_SATISFIED.log(
                        volume_id=volume_id, size_gib=current_size_gib,
                        target_size_gib=target,
                    )
                    return NOOP
                RECOVERING_FILESYSTEM.log(
                    volume_id=volume_id, device_path=device_path,
                    size_gib=current_size_gib,
                )
                self._wait_until_usable(volume_id, current_size_gib, deadline)
                self._extend(device_path)
                return ResizeOutcome(
                    previous_size_gib=current_size_gib,
                    new_size_gib=current_size_gib,
                    filesystem_grown=True,
                    duration_ms=self._elapsed_ms(start),
                )

            try:
                self.volume_api.grow_volume(
                    volume_id, target,
                    iops=decision.iops, throughput=decision.throughput,
                )
            except ModificationInProgress:
                MODIFICATION_ALREADY_IN_PROGRESS.log(
                    volume_id=volume_id, target_size_gib=target,
                )
            self._wait_until_usable(volume_id, target, deadline)
            self._extend(device_path)
            return ResizeOutcome(
                previous_size_gib=current_size_gib,
                new_size_gib=target,
                filesystem_grown=True,
                duration_ms=self._elapsed_ms(start),
            )

    def _wait_until_usable(self, volume_id, target, deadline):
        """
        Poll the provider until the volume is at least ``target`` GiB and its
        modification has progressed far enough for the OS to see the space.
        """
        start = self.clock()
        last_status = [None]

        def usable():
            status = self.volume_api.describe_volume(volume_id)
            last_status[0] = status
            if status.modification_state == FAILED_MODIFICATION_STATE:
                raise VolumeModificationFailed(
                    volume_id, status.modification_state)
            ready = (
                status.size_gib >= target and
                status.modification_state in USABLE_MODIFICATION_STATES
            )
            if not ready:
                WAITING_FOR_VOLUME_MODIFICATION.log(
                    volume_id=volume_id,
                    size_gib=status.size_gib,
                    target_size_gib=target,
                    modification_state=status.modification_state,
                    wait_time=self.clock() - start,
                )
            return ready

        try:
            poll_until(usable, deadline.bound(self._steps()), self.sleep)
        except LoopExceeded:
            raise ResizeTimeout(volume_id, target, last_status[0])

    def _extend(self, device_path):
        with EXTEND_FILESYSTEM(device_path=device_path):
            self.extender.extend(device_path)
