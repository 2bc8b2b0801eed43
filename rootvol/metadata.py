# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.test.test_metadata -*-

"""
Discover the instance a bootstrap run executes on.

The instance identity comes from the local instance metadata service
(IMDS); the instance type and the root volume come from the EC2 API; the
disks come from the OS itself, because only the OS can tell NVMe instance
storage apart from EBS on Nitro instances.
"""

import json
import re
from datetime import timedelta
from subprocess import CalledProcessError

import requests
from bitmath import Byte
from botocore.exceptions import ClientError
from zope.interface import implementer, Interface

from ._aws import (
    boto3_log, ec2_client, error_code, CONNECTION_ERRORS,
    TRANSIENT_ERROR_CODES,
)
from ._logging import IMDS_GET, RESOLVE_INSTANCE
from .common import backoff, run_process, with_retry, retry_if
from .exceptions import MetadataUnavailable, MalformedMetadata
from .model import BlockDevice, InstanceDescriptor

# EC2 instances have a metadata service that can be queried for information
# about the instance the code is being run on.
IMDS_ENDPOINT = u'http://169.254.169.254'
_TOKEN_PATH = u'/latest/api/token'
_METADATA_PATH = u'/latest/meta-data/'
_TOKEN_HEADER = u'X-aws-ec2-metadata-token'
_TOKEN_TTL_HEADER = u'X-aws-ec2-metadata-token-ttl-seconds'
_TOKEN_TTL_SECONDS = 21600
# Per request; the metadata service is local so this is generous.
IMDS_REQUEST_TIMEOUT = 2

# Status codes of the token call that mean IMDSv2 is not available and plain
# IMDSv1 requests should be made instead.
_IMDSV1_FALLBACK_CODES = frozenset([403, 404, 405])

# The model string NVMe instance store disks report.
INSTANCE_STORE_MODEL = u'Amazon EC2 NVMe Instance Storage'

_EPHEMERAL_MAPPING = re.compile(r'^ephemeral\d+$')

# Cold boot retries: the metadata service and the EC2 API may both be
# briefly unreachable while networking comes up.
METADATA_RETRY_TIMEOUT = 60.0


class IInstanceMetadata(Interface):
    """
    Read-only access to the description of the running instance.
    """

    def compute_instance_id(deadline=None):
        """
        Look up the identifier of the instance this code runs on.

        :param Deadline deadline: If given, retrying stops when it passes.

        :raise MetadataUnavailable: If the metadata service cannot be reached.
        :returns: The instance identifier as ``str``.
        """

    def resolve(instance_id, deadline=None):
        """
        Describe an instance.

        :param str instance_id: The instance identifier.
        :param Deadline deadline: If given, retrying stops when it passes.

        :raise MetadataUnavailable: If a metadata source is unreachable after
            retrying.
        :raise MalformedMetadata: If a response cannot be understood.
        :returns: An ``InstanceDescriptor``.
        """


class IMDSClient(object):
    """
    A client for the EC2 instance metadata service, preferring IMDSv2
    session tokens.

    :ivar session: The ``requests.Session`` used for requests.
    :ivar str endpoint: The base URL of the metadata service.
    """
    def __init__(self, session=None, endpoint=IMDS_ENDPOINT,
                 timeout=IMDS_REQUEST_TIMEOUT):
        if session is None:
            session = requests.Session()
        self.session = session
        self.endpoint = endpoint
        self.timeout = timeout
        self._token = None

    def _request(self, method, path, headers):
        try:
            return self.session.request(
                method, self.endpoint + path, headers=headers,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise MetadataUnavailable(
                u"Instance metadata service unreachable", path, str(e))

    def _headers(self):
        if self._token is None:
            response = self._request(
                u"PUT", _TOKEN_PATH,
                {_TOKEN_TTL_HEADER: str(_TOKEN_TTL_SECONDS)},
            )
            if response.status_code == 200:
                self._token = response.text
            elif response.status_code in _IMDSV1_FALLBACK_CODES:
                self._token = u''
            else:
                raise MetadataUnavailable(
                    u"Could not get an instance metadata token",
                    response.status_code)
        if self._token:
            return {_TOKEN_HEADER: self._token}
        return {}

    def get(self, path):
        """
        Read a metadata value.

        :param str path: The path below ``/latest/meta-data/``.

        :raise MetadataUnavailable: If the service cannot be reached or
            reports a server error.
        :return: The value as ``str`` or ``None`` if the path does not exist.
        """
        with IMDS_GET(path=path) as action:
            response = self._request(
                u"GET", _METADATA_PATH + path, self._headers())
            if response.status_code == 401:
                # The token expired; get a new one next time.
                self._token = None
                raise MetadataUnavailable(
                    u"Instance metadata token rejected", path)
            if response.status_code == 404:
                action.add_success_fields(found=False)
                return None
            if response.status_code >= 500:
                raise MetadataUnavailable(
                    u"Instance metadata service error", path,
                    response.status_code)
            if response.status_code != 200:
                raise MalformedMetadata(
                    u"Unexpected response from instance metadata service",
                    path, response.status_code)
            action.add_success_fields(found=True)
            return response.text


def _parse_size(name, value):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedMetadata(
            u"Size of device {!r} is not an integer: {!r}".format(
                name, value))


def list_disks(run=run_process):
    """
    List the disks the OS sees, marking NVMe instance storage as local
    ephemeral.

    :param run: ``run_process`` or a replacement for testing.

    :raise MalformedMetadata: If ``lsblk`` fails or its output cannot be
        parsed.
    :return: A ``list`` of ``BlockDevice``, in ``lsblk`` order.
    """
    try:
        result = run([
            "lsblk", "--json", "--bytes", "--nodeps",
            "--output", "NAME,SIZE,MODEL,TYPE",
        ])
    except CalledProcessError as e:
        raise MalformedMetadata(u"Could not list disks", str(e))
    try:
        devices = json.loads(result.output.decode("utf-8"))["blockdevices"]
    except (ValueError, KeyError, TypeError) as e:
        raise MalformedMetadata(u"Could not parse lsblk output", str(e))
    disks = []
    for device in devices:
        if not isinstance(device, dict) or u"name" not in device:
            raise MalformedMetadata(u"Unexpected lsblk entry", repr(device))
        if device.get(u"type") != u"disk":
            continue
        size = _parse_size(device[u"name"], device.get(u"size"))
        model = (device.get(u"model") or u"").strip()
        disks.append(BlockDevice(
            device_path=u"/dev/" + device[u"name"],
            is_local_ephemeral=(model == INSTANCE_STORE_MODEL),
            size_gib=int(Byte(size).to_GiB().value),
        ))
    return disks


def _expected_device(requested_device):
    """
    Given a device name from the EC2 block device mapping, determine the OS
    device path that the Xen block driver creates for it.

    This maps ``sdX`` names to ``/dev/xvdX``.
    """
    name = requested_device
    if name.startswith(u"/dev/"):
        name = name[len(u"/dev/"):]
    if name.startswith(u"sd"):
        return u"/dev/xvd" + name[len(u"sd"):]
    if name.startswith(u"xvd"):
        return u"/dev/" + name
    raise ValueError(
        "Unsupported requested device {!r}".format(requested_device)
    )


def _mark_mapped_ephemeral(disks, ephemeral_devices):
    """
    Mark disks that the metadata service lists as ephemeral mappings.

    Only devices the OS actually has are marked; AMI mappings for instance
    types without instance storage do not produce a disk.
    """
    marked = []
    for disk in disks:
        if disk.device_path in ephemeral_devices:
            disk = disk.set(is_local_ephemeral=True)
        marked.append(disk)
    return marked


def _is_transient(exception):
    return isinstance(exception, MetadataUnavailable)


def _retrying(method, sleep=None, retry_timeout=METADATA_RETRY_TIMEOUT,
              deadline=None):
    """
    Wrap a metadata read so that ``MetadataUnavailable`` is retried with
    backoff for up to ``retry_timeout`` seconds, and never past
    ``deadline``.
    """
    steps = backoff(step=1.0, maximum_step=10.0, timeout=retry_timeout)
    if deadline is not None:
        steps = deadline.bound(steps)
    return with_retry(
        method,
        should_retry=retry_if(_is_transient),
        steps=(timedelta(seconds=step) for step in steps),
        sleep=sleep,
    )


def region_from_metadata(imds, sleep=None,
                         retry_timeout=METADATA_RETRY_TIMEOUT, deadline=None):
    """
    Look up the region of the running instance.

    :param IMDSClient imds: The metadata service client.
    :param Deadline deadline: If given, retrying stops when it passes.

    :raise MalformedMetadata: If the metadata service has no region.
    :return: The region slug.
    """
    region = _retrying(
        imds.get, sleep, retry_timeout, deadline)(u"placement/region")
    if not region:
        raise MalformedMetadata(u"No placement/region in instance metadata")
    return region.strip()


class RegionalEC2Client(object):
    """
    A boto3 EC2 client which is created the first time it is used.

    When no region is configured the region is read from the metadata
    service at that point, so an unreachable service fails the instance
    lookup of a run rather than its setup.  Attributes of the client are
    available directly on this object.

    :ivar region: The configured region, or ``None``.
    """
    def __init__(self, imds, region=None, factory=ec2_client, sleep=None,
                 retry_timeout=METADATA_RETRY_TIMEOUT):
        """
        :param IMDSClient imds: The metadata service client.
        :param factory: A one-argument callable taking a region and
            returning a boto3 EC2 client.
        """
        self.imds = imds
        self.region = region
        self.factory = factory
        self.retry_timeout = retry_timeout
        self._sleep = sleep
        self._client = None

    def connect(self, deadline=None):
        """
        :param Deadline deadline: If given, looking the region up stops
            retrying when it passes.

        :return: The boto3 client.
        """
        if self._client is None:
            region = self.region
            if region is None:
                region = region_from_metadata(
                    self.imds, self._sleep, self.retry_timeout, deadline)
            self._client = self.factory(region)
        return self._client

    def __getattr__(self, name):
        if name.startswith(u"_"):
            raise AttributeError(name)
        return getattr(self.connect(), name)


@implementer(IInstanceMetadata)
class EC2InstanceMetadata(object):
    """
    ``IInstanceMetadata`` backed by IMDS, the EC2 API and ``lsblk``.
    """
    def __init__(self, ec2_client, imds=None, run=run_process, sleep=None,
                 retry_timeout=METADATA_RETRY_TIMEOUT):
        """
        :param ec2_client: A boto3 EC2 client, or a ``RegionalEC2Client``
            whose region is found within the deadline given to
            ``resolve``.
        :param IMDSClient imds: The metadata service client.
        :param run: ``run_process`` or a replacement for testing.
        :param sleep: A replacement for ``time.sleep`` used between retries.
        :param float retry_timeout: The total time, in seconds, to keep
            retrying an unreachable metadata source.
        """
        if imds is None:
            imds = IMDSClient()
        self.connection = ec2_client
        self.imds = imds
        self._run = run
        self._sleep = sleep
        self.retry_timeout = retry_timeout

    def _retrying(self, method, deadline):
        return _retrying(method, self._sleep, self.retry_timeout, deadline)

    def _get_instance_id(self):
        instance_id = self.imds.get(u"instance-id")
        if not instance_id:
            raise MalformedMetadata(u"No instance-id in instance metadata")
        return instance_id.strip()

    def compute_instance_id(self, deadline=None):
        """
        Look up the EC2 instance ID for this node.
        """
        return self._retrying(self._get_instance_id, deadline)()

    @boto3_log
    def _describe_instance(self, instance_id):
        try:
            response = self.connection.describe_instances(
                InstanceIds=[instance_id])
        except CONNECTION_ERRORS as e:
            raise MetadataUnavailable(u"EC2 API unreachable", str(e))
        except ClientError as e:
            if error_code(e) not in TRANSIENT_ERROR_CODES:
                raise
            raise MetadataUnavailable(
                u"EC2 API refused to describe instance", instance_id,
                error_code(e))
        try:
            return response[u"Reservations"][0][u"Instances"][0]
        except (KeyError, IndexError, TypeError):
            raise MalformedMetadata(
                u"Instance missing from DescribeInstances response",
                instance_id)

    def _ephemeral_devices(self):
        mappings = self.imds.get(u"block-device-mapping/")
        if mappings is None:
            return set()
        devices = set()
        for name in mappings.split():
            if _EPHEMERAL_MAPPING.match(name) is None:
                continue
            device = self.imds.get(u"block-device-mapping/" + name)
            if device is None:
                continue
            try:
                devices.add(_expected_device(device.strip()))
            except ValueError:
                raise MalformedMetadata(
                    u"Unexpected ephemeral device name", name, device)
        return devices

    def resolve(self, instance_id, deadline=None):
        with RESOLVE_INSTANCE(instance_id=instance_id) as action:
            if isinstance(self.connection, RegionalEC2Client):
                self.connection.connect(deadline)
            instance = self._retrying(
                self._describe_instance, deadline)(instance_id)
            try:
                instance_type = instance[u"InstanceType"]
                root_device = instance[u"RootDeviceName"]
                mappings = instance[u"BlockDeviceMappings"]
            except (KeyError, TypeError) as e:
                raise MalformedMetadata(
                    u"DescribeInstances response missing key", str(e))
            root_volume_id = None
            for mapping in mappings:
                if mapping.get(u"DeviceName") == root_device:
                    root_volume_id = mapping.get(u"Ebs", {}).get(u"VolumeId")
            if not root_volume_id:
                raise MalformedMetadata(
                    u"No EBS volume mapped at root device", root_device)

            disks = list_disks(self._run)
            ephemeral = self._retrying(self._ephemeral_devices, deadline)()
            disks = _mark_mapped_ephemeral(disks, ephemeral)

            descriptor = InstanceDescriptor(
                instance_id=instance_id,
                instance_type=instance_type,
                attached_local_disks=disks,
                root_volume_id=root_volume_id,
                root_device_path=root_device,
            )
            action.add_success_fields(
                instance_type=instance_type,
                root_volume_id=root_volume_id,
                local_disks=[
                    disk.device_path for disk in disks
                    if disk.is_local_ephemeral
                ],
            )
            return descriptor

