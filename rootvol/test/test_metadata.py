# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Tests for ``rootvol.metadata``.
"""

import json

import boto3
from botocore.exceptions import ClientError
from botocore.stub import Stubber
from eliot.testing import capture_logging, LoggedAction
from pyrsistent import PClass, field
import requests
from testtools.matchers import Equals, MatchesStructure
from zope.interface.verify import verifyObject

from .._logging import RESOLVE_INSTANCE
from ..common import Deadline
from ..exceptions import MalformedMetadata, MetadataUnavailable
from ..metadata import (
    IInstanceMetadata, IMDSClient, EC2InstanceMetadata, IMDS_ENDPOINT,
    INSTANCE_STORE_MODEL, RegionalEC2Client, _TOKEN_HEADER, _expected_device,
    list_disks, region_from_metadata,
)
from ..model import BlockDevice
from ..testtools import TestCase, FakeClock, FakeProcessRunner

INSTANCE_ID = u"i-0123456789abcdef0"
VOLUME_ID = u"vol-0123456789abcdef0"
TOKEN = u"AQAEAFake=="


class FakeResponse(PClass):
    status_code = field(type=int, mandatory=True)
    text = field(type=str, initial=u"")


class FakeIMDSSession(object):
    """
    A ``requests.Session`` replacement serving canned instance metadata.

    :ivar list requests: ``(method, path, headers)`` of every request.
    """
    def __init__(self, metadata, token_status=200, failures=0):
        """
        :param dict metadata: Metadata path to either its text or an HTTP
            status to respond with.
        :param int token_status: The status of token requests.  Any other
            than 200 means metadata is served without a token.
        :param int failures: How many requests fail to connect before the
            service comes up.
        """
        self.metadata = metadata
        self.token_status = token_status
        self.failures = failures
        self.requests = []

    def request(self, method, url, headers, timeout):
        path = url[len(IMDS_ENDPOINT):]
        self.requests.append((method, path, headers))
        if self.failures:
            self.failures -= 1
            raise requests.ConnectionError("Network is unreachable")
        if method == u"PUT":
            return FakeResponse(status_code=self.token_status, text=TOKEN)
        if self.token_status == 200 and headers.get(_TOKEN_HEADER) != TOKEN:
            return FakeResponse(status_code=401)
        value = self.metadata.get(path[len(u"/latest/meta-data/"):])
        if value is None:
            return FakeResponse(status_code=404)
        if isinstance(value, int):
            return FakeResponse(status_code=value)
        return FakeResponse(status_code=200, text=value)


def lsblk_output(*devices):
    """
    :param devices: ``(name, size, model, type)`` tuples.
    :return: The ``bytes`` ``lsblk --json`` prints for them.
    """
    return json.dumps({u"blockdevices": [
        {u"name": name, u"size": size, u"model": model, u"type": kind}
        for (name, size, model, kind) in devices
    ]}).encode("utf-8")


ROOT_EBS = (u"nvme0n1", 21474836480, u"Amazon Elastic Block Store", u"disk")
LOCAL_NVME = (u"nvme1n1", 474998751232, INSTANCE_STORE_MODEL, u"disk")


def fake_lsblk(*devices):
    return FakeProcessRunner([((u"lsblk",), lsblk_output(*devices))])


def stubbed_ec2_client(case):
    """
    Create a boto3 EC2 client whose responses are stubbed.

    :return: A tuple of the client and its ``Stubber``.
    """
    client = boto3.session.Session().client(
        "ec2", region_name="us-east-1",
        aws_access_key_id="testing", aws_secret_access_key="testing",
    )
    stubber = Stubber(client)
    stubber.activate()
    case.addCleanup(stubber.deactivate)
    return client, stubber


def describe_instances_response(instance_type=u"c6i.2xlarge",
                                root_device=u"/dev/xvda",
                                mapped_device=u"/dev/xvda"):
    return {
        u"Reservations": [{
            u"Instances": [{
                u"InstanceId": INSTANCE_ID,
                u"InstanceType": instance_type,
                u"RootDeviceName": root_device,
                u"BlockDeviceMappings": [{
                    u"DeviceName": mapped_device,
                    u"Ebs": {u"VolumeId": VOLUME_ID, u"Status": u"attached"},
                }],
            }],
        }],
    }


class IMDSClientTests(TestCase):
    """
    Tests for ``IMDSClient``.
    """
    def test_token(self):
        """
        A session token is requested once and sent with every read.
        """
        session = FakeIMDSSession({u"instance-id": INSTANCE_ID,
                                   u"instance-type": u"c6i.2xlarge"})
        imds = IMDSClient(session=session)
        values = (imds.get(u"instance-id"), imds.get(u"instance-type"))
        self.expectThat(values, Equals((INSTANCE_ID, u"c6i.2xlarge")))
        self.expectThat(
            [(method, headers.get(_TOKEN_HEADER))
             for (method, _, headers) in session.requests],
            Equals([(u"PUT", None), (u"GET", TOKEN), (u"GET", TOKEN)]),
        )

    def test_imdsv1_fallback(self):
        """
        When the token request is refused, reads are made without a token.
        """
        for status in (403, 404, 405):
            session = FakeIMDSSession(
                {u"instance-id": INSTANCE_ID}, token_status=status)
            imds = IMDSClient(session=session)
            self.expectThat(imds.get(u"instance-id"), Equals(INSTANCE_ID))
            self.expectThat(session.requests[-1][2], Equals({}))

    def test_missing(self):
        """
        A path that does not exist reads as ``None``.
        """
        imds = IMDSClient(session=FakeIMDSSession({}))
        self.assertIs(None, imds.get(u"block-device-mapping/"))

    def test_server_error(self):
        """
        A server error means the service is unavailable.
        """
        imds = IMDSClient(session=FakeIMDSSession({u"instance-id": 503}))
        self.assertRaises(MetadataUnavailable, imds.get, u"instance-id")

    def test_unreachable(self):
        """
        A connection failure means the service is unavailable.
        """
        imds = IMDSClient(session=FakeIMDSSession({}, failures=1))
        self.assertRaises(MetadataUnavailable, imds.get, u"instance-id")

    def test_unexpected_status(self):
        """
        A client error other than a missing path is malformed metadata.
        """
        imds = IMDSClient(session=FakeIMDSSession({u"instance-id": 400}))
        self.assertRaises(MalformedMetadata, imds.get, u"instance-id")

    def test_token_rejected(self):
        """
        A rejected token is discarded so that the next read gets a new one.
        """
        session = FakeIMDSSession({u"instance-id": INSTANCE_ID})
        imds = IMDSClient(session=session)
        imds._token = u"expired"
        self.assertRaises(MetadataUnavailable, imds.get, u"instance-id")
        self.assertEqual(INSTANCE_ID, imds.get(u"instance-id"))


class ListDisksTests(TestCase):
    """
    Tests for ``list_disks``.
    """
    def test_instance_storage(self):
        """
        Disks reporting the instance storage model are local ephemeral; EBS
        disks are not.  Sizes are converted to whole GiB.
        """
        disks = list_disks(fake_lsblk(ROOT_EBS, LOCAL_NVME))
        self.assertThat(disks, Equals([
            BlockDevice(device_path=u"/dev/nvme0n1", is_local_ephemeral=False,
                        size_gib=20),
            BlockDevice(device_path=u"/dev/nvme1n1", is_local_ephemeral=True,
                        size_gib=442),
        ]))

    def test_not_disks(self):
        """
        Loop devices, ROMs and partitions are ignored.
        """
        disks = list_disks(fake_lsblk(
            ROOT_EBS,
            (u"loop0", 58720256, None, u"loop"),
            (u"sr0", 1073741312, u"QEMU DVD-ROM", u"rom"),
        ))
        self.assertEqual([u"/dev/nvme0n1"], [d.device_path for d in disks])

    def test_bad_json(self):
        """
        Output that is not ``lsblk`` JSON is malformed metadata.
        """
        run = FakeProcessRunner([((u"lsblk",), b"NAME SIZE\nxvda 8G\n")])
        self.assertRaises(MalformedMetadata, list_disks, run)

    def test_lsblk_fails(self):
        """
        A failing ``lsblk`` is malformed metadata.
        """
        run = FakeProcessRunner(
            [((u"lsblk",), (32, b"lsblk: failed to access sysfs\n"))])
        self.assertRaises(MalformedMetadata, list_disks, run)

    def test_bad_size(self):
        """
        A size that is not an integer is malformed metadata.
        """
        self.assertRaises(
            MalformedMetadata, list_disks,
            fake_lsblk((u"xvda", u"8G", None, u"disk")))


class ExpectedDeviceTests(TestCase):
    """
    Tests for ``_expected_device``.
    """
    def test_sdX_to_xvdX(self):
        """
        ``sdX``-style devices are rewritten to corresponding ``xvdX`` devices.
        """
        self.assertEqual(
            (u"/dev/xvdj", u"/dev/xvdb"),
            (_expected_device(u"/dev/sdj"), _expected_device(u"sdb")),
        )

    def test_xvdX_unchanged(self):
        """
        ``xvdX``-style devices keep their name.
        """
        self.assertEqual(u"/dev/xvdc", _expected_device(u"xvdc"))

    def test_non_sdX_rejected(self):
        """
        Devices not in the ``sdX`` category are rejected with ``ValueError``.
        """
        self.assertRaises(ValueError, _expected_device, u"/dev/hda")


class RegionFromMetadataTests(TestCase):
    """
    Tests for ``region_from_metadata``.
    """
    def test_region(self):
        """
        The region is read from the placement metadata.
        """
        imds = IMDSClient(session=FakeIMDSSession(
            {u"placement/region": u"eu-west-1"}))
        self.assertEqual(u"eu-west-1", region_from_metadata(imds))

    def test_retried(self):
        """
        The metadata service is retried while it is unreachable.
        """
        sleeps = []
        imds = IMDSClient(session=FakeIMDSSession(
            {u"placement/region": u"eu-west-1"}, failures=2))
        region = region_from_metadata(imds, sleep=sleeps.append)
        self.assertEqual((u"eu-west-1", [1.0, 2.0]), (region, sleeps))

    def test_gives_up(self):
        """
        Once the retry time is used up the service is reported unavailable.
        """
        imds = IMDSClient(session=FakeIMDSSession({}, failures=100))
        self.assertRaises(
            MetadataUnavailable, region_from_metadata, imds,
            sleep=lambda seconds: None, retry_timeout=3.0,
        )

    def test_deadline(self):
        """
        Retrying stops when the deadline passes, even with retry time left.
        """
        clock = FakeClock(now=0.0)
        imds = IMDSClient(session=FakeIMDSSession({}, failures=100))
        self.assertRaises(
            MetadataUnavailable, region_from_metadata, imds,
            sleep=clock.sleep, deadline=Deadline.after(2, clock=clock),
        )
        self.assertEqual([1.0, 1.0], clock.sleeps)


class FakeEC2ClientFactory(object):
    """
    An ``ec2_client_factory`` which records the regions it is asked for.
    """
    def __init__(self, client=None):
        if client is None:
            client = object()
        self.regions = []
        self.client = client

    def __call__(self, region):
        self.regions.append(region)
        return self.client


class RegionalEC2ClientTests(TestCase):
    """
    Tests for ``RegionalEC2Client``.
    """
    def test_lazy(self):
        """
        No client is created until one is needed.
        """
        factory = FakeEC2ClientFactory()
        RegionalEC2Client(
            IMDSClient(session=FakeIMDSSession({})), region=u"us-west-2",
            factory=factory)
        self.assertEqual([], factory.regions)

    def test_configured_region(self):
        """
        A configured region is used without asking the metadata service, and
        the client is only created once.
        """
        factory = FakeEC2ClientFactory()
        session = FakeIMDSSession({u"placement/region": u"eu-west-1"})
        connection = RegionalEC2Client(
            IMDSClient(session=session), region=u"us-west-2",
            factory=factory)
        self.expectThat(
            (connection.connect(), connection.connect()),
            Equals((factory.client, factory.client)),
        )
        self.expectThat(factory.regions, Equals([u"us-west-2"]))
        self.expectThat(session.requests, Equals([]))

    def test_region_from_metadata(self):
        """
        Without a configured region the region of the instance is used.
        """
        factory = FakeEC2ClientFactory()
        connection = RegionalEC2Client(
            IMDSClient(session=FakeIMDSSession(
                {u"placement/region": u"eu-west-1"})),
            factory=factory)
        connection.connect()
        self.assertEqual([u"eu-west-1"], factory.regions)

    def test_attributes(self):
        """
        Attributes of the client are reached through the connection.
        """
        client, _ = stubbed_ec2_client(self)
        connection = RegionalEC2Client(
            IMDSClient(session=FakeIMDSSession({})), region=u"us-east-1",
            factory=FakeEC2ClientFactory(client))
        self.assertEqual(
            client.describe_instances, connection.describe_instances)

    def test_unreachable(self):
        """
        When the region cannot be found before the deadline no client is
        created.
        """
        clock = FakeClock(now=0.0)
        factory = FakeEC2ClientFactory()
        connection = RegionalEC2Client(
            IMDSClient(session=FakeIMDSSession({}, failures=100)),
            factory=factory, sleep=clock.sleep)
        self.assertRaises(
            MetadataUnavailable,
            connection.connect, Deadline.after(5, clock=clock))
        self.expectThat(factory.regions, Equals([]))
        self.expectThat(clock(), Equals(5.0))


class EC2InstanceMetadataTests(TestCase):
    """
    Tests for ``EC2InstanceMetadata``.
    """
    def metadata(self, imds_values=None, devices=(ROOT_EBS,), **kwargs):
        if imds_values is None:
            imds_values = {u"instance-id": INSTANCE_ID}
        client, stubber = stubbed_ec2_client(self)
        metadata = EC2InstanceMetadata(
            client,
            imds=IMDSClient(session=FakeIMDSSession(imds_values)),
            run=fake_lsblk(*devices),
            sleep=lambda seconds: None,
            **kwargs
        )
        return metadata, stubber

    def test_interface(self):
        """
        ``EC2InstanceMetadata`` provides ``IInstanceMetadata``.
        """
        metadata, _ = self.metadata()
        self.assertTrue(verifyObject(IInstanceMetadata, metadata))

    def test_instance_id(self):
        """
        The instance identifier comes from the metadata service.
        """
        metadata, _ = self.metadata()
        self.assertEqual(INSTANCE_ID, metadata.compute_instance_id())

    @capture_logging(None)
    def test_resolve(self, logger):
        """
        ``resolve`` describes the instance type, the root volume and the
        disks of the instance.
        """
        metadata, stubber = self.metadata(devices=(ROOT_EBS, LOCAL_NVME))
        stubber.add_response(
            "describe_instances", describe_instances_response(),
            {"InstanceIds": [INSTANCE_ID]},
        )
        descriptor = metadata.resolve(INSTANCE_ID)
        self.expectThat(
            descriptor,
            MatchesStructure.byEquality(
                instance_id=INSTANCE_ID,
                instance_type=u"c6i.2xlarge",
                root_volume_id=VOLUME_ID,
                root_device_path=u"/dev/xvda",
            ),
        )
        self.expectThat(descriptor.has_local_ephemeral_disk(), Equals(True))
        [action] = LoggedAction.ofType(logger.messages, RESOLVE_INSTANCE)
        self.expectThat(
            action.end_message[u"local_disks"], Equals([u"/dev/nvme1n1"]))

    def test_xen_ephemeral_mapping(self):
        """
        On Xen instances, disks the metadata service maps as ``ephemeralN``
        are local ephemeral.
        """
        metadata, stubber = self.metadata(
            imds_values={
                u"block-device-mapping/": u"ami\nephemeral0\nroot",
                u"block-device-mapping/ephemeral0": u"sdb",
            },
            devices=[
                (u"xvda", 8589934592, None, u"disk"),
                (u"xvdb", 34359738368, None, u"disk"),
            ],
        )
        stubber.add_response(
            "describe_instances", describe_instances_response(
                instance_type=u"m3.medium"))
        descriptor = metadata.resolve(INSTANCE_ID)
        self.assertEqual(
            [(u"/dev/xvda", False), (u"/dev/xvdb", True)],
            [(disk.device_path, disk.is_local_ephemeral)
             for disk in descriptor.attached_local_disks],
        )

    def test_no_root_volume(self):
        """
        An instance without an EBS volume at its root device is malformed
        metadata.
        """
        metadata, stubber = self.metadata()
        stubber.add_response(
            "describe_instances", describe_instances_response(
                mapped_device=u"/dev/sdf"))
        self.assertRaises(MalformedMetadata, metadata.resolve, INSTANCE_ID)

    def test_instance_missing(self):
        """
        A response without the instance is malformed metadata.
        """
        metadata, stubber = self.metadata()
        stubber.add_response("describe_instances", {u"Reservations": []})
        self.assertRaises(MalformedMetadata, metadata.resolve, INSTANCE_ID)

    def test_api_error_retried(self):
        """
        EC2 API errors are retried and then reported as unavailable metadata.
        """
        metadata, stubber = self.metadata(retry_timeout=3.0)
        # Two retries fit in three seconds of backoff.
        for _ in range(3):
            stubber.add_client_error(
                "describe_instances",
                service_error_code=u"InvalidInstanceID.NotFound")
        self.assertRaises(MetadataUnavailable, metadata.resolve, INSTANCE_ID)
        stubber.assert_no_pending_responses()

    def test_api_error_not_retried(self):
        """
        EC2 API errors that retrying cannot fix are raised at once.
        """
        metadata, stubber = self.metadata()
        stubber.add_client_error(
            "describe_instances",
            service_error_code=u"UnauthorizedOperation")
        error = self.assertRaises(
            ClientError, metadata.resolve, INSTANCE_ID)
        self.assertEqual(
            u"UnauthorizedOperation", error.response[u"Error"][u"Code"])
        stubber.assert_no_pending_responses()

    def test_api_error_recovers(self):
        """
        A transient EC2 API error is retried.
        """
        metadata, stubber = self.metadata()
        stubber.add_client_error(
            "describe_instances", service_error_code=u"RequestLimitExceeded")
        stubber.add_response(
            "describe_instances", describe_instances_response())
        self.assertEqual(
            VOLUME_ID, metadata.resolve(INSTANCE_ID).root_volume_id)
