# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Tests for ``rootvol.model``.
"""

from pyrsistent import InvariantException
from testtools.matchers import Equals

from ..model import (
    BlockDevice, DecisionKinds, InstanceDescriptor, ResizeDecision,
    ResizeOutcome, SkipReasons, VolumeSizingRule, resize, skip,
)
from ..testtools import TestCase


def descriptor(disks=()):
    return InstanceDescriptor(
        instance_id=u"i-0123456789abcdef0",
        instance_type=u"c6i.2xlarge",
        attached_local_disks=list(disks),
        root_volume_id=u"vol-0123456789abcdef0",
        root_device_path=u"/dev/xvda",
    )


class InstanceDescriptorTests(TestCase):
    """
    Tests for ``InstanceDescriptor``.
    """
    def test_no_disks(self):
        """
        An instance without disks has no local ephemeral disk.
        """
        self.assertFalse(descriptor().has_local_ephemeral_disk())

    def test_ebs_only(self):
        """
        Disks that are not local ephemeral do not count.
        """
        self.assertFalse(descriptor([
            BlockDevice(device_path=u"/dev/nvme0n1",
                        is_local_ephemeral=False, size_gib=20),
        ]).has_local_ephemeral_disk())

    def test_local_ephemeral(self):
        """
        A single local ephemeral disk among others is found.
        """
        self.assertTrue(descriptor([
            BlockDevice(device_path=u"/dev/nvme0n1",
                        is_local_ephemeral=False, size_gib=20),
            BlockDevice(device_path=u"/dev/nvme1n1",
                        is_local_ephemeral=True, size_gib=474),
        ]).has_local_ephemeral_disk())

    def test_disk_order(self):
        """
        Disks keep the order they were given in.
        """
        paths = [u"/dev/nvme2n1", u"/dev/nvme0n1", u"/dev/nvme1n1"]
        value = descriptor([
            BlockDevice(device_path=path, is_local_ephemeral=False,
                        size_gib=1)
            for path in paths
        ])
        self.assertThat(
            [disk.device_path for disk in value.attached_local_disks],
            Equals(paths),
        )


class VolumeSizingRuleTests(TestCase):
    """
    Tests for ``VolumeSizingRule``.
    """
    def test_positive_size(self):
        """
        A rule must have a positive size.
        """
        self.assertRaises(
            InvariantException, VolumeSizingRule,
            instance_type_pattern=u"c6i.2xlarge", target_size_gib=0,
        )

    def test_performance_optional(self):
        """
        ``iops`` and ``throughput`` default to ``None``.
        """
        rule = VolumeSizingRule(
            instance_type_pattern=u"c6i.2xlarge", target_size_gib=300)
        self.assertEqual((None, None), (rule.iops, rule.throughput))


class ResizeDecisionTests(TestCase):
    """
    Tests for ``ResizeDecision``.
    """
    def test_resize(self):
        """
        ``resize`` builds a ``RESIZE`` decision.
        """
        decision = resize(300, u"c6i.2xlarge")
        self.assertEqual(
            (DecisionKinds.RESIZE, 300, True),
            (decision.kind, decision.target_size_gib, decision.is_resize),
        )

    def test_skip(self):
        """
        ``skip`` builds a ``SKIP`` decision.
        """
        decision = skip(SkipReasons.NO_MATCHING_RULE)
        self.assertEqual(
            (DecisionKinds.SKIP, SkipReasons.NO_MATCHING_RULE, False),
            (decision.kind, decision.reason, decision.is_resize),
        )

    def test_skip_without_reason(self):
        """
        A ``SKIP`` decision needs a reason.
        """
        self.assertRaises(
            InvariantException, ResizeDecision, kind=DecisionKinds.SKIP)

    def test_skip_with_size(self):
        """
        A ``SKIP`` decision cannot carry a size.
        """
        self.assertRaises(
            InvariantException, ResizeDecision, kind=DecisionKinds.SKIP,
            reason=SkipReasons.NO_MATCHING_RULE, target_size_gib=300,
        )

    def test_resize_without_size(self):
        """
        A ``RESIZE`` decision needs a size.
        """
        self.assertRaises(
            InvariantException, ResizeDecision, kind=DecisionKinds.RESIZE,
            rule_pattern=u"c6i.2xlarge",
        )

    def test_resize_log_fields(self):
        """
        The log fields of a resize decision include performance parameters
        only when they are set.
        """
        self.assertThat(
            [resize(300, u"c6i.2xlarge").to_log_fields(),
             resize(500, u"c6i", iops=6000,
                    throughput=250).to_log_fields()],
            Equals([
                {u"kind": u"resize", u"target_size_gib": 300,
                 u"rule_pattern": u"c6i.2xlarge"},
                {u"kind": u"resize", u"target_size_gib": 500,
                 u"rule_pattern": u"c6i", u"iops": 6000,
                 u"throughput": 250},
            ]),
        )

    def test_skip_log_fields(self):
        """
        The log fields of a skip decision carry the reason.
        """
        self.assertThat(
            skip(SkipReasons.LOCAL_EPHEMERAL_PRESENT).to_log_fields(),
            Equals({u"kind": u"skip", u"reason": u"local-ephemeral-present"}),
        )


class ResizeOutcomeTests(TestCase):
    """
    Tests for ``ResizeOutcome``.
    """
    def test_log_fields(self):
        """
        Every attribute of the outcome appears in its log fields.
        """
        outcome = ResizeOutcome(
            previous_size_gib=20, new_size_gib=300, filesystem_grown=True,
            duration_ms=4500,
        )
        self.assertThat(
            outcome.to_log_fields(),
            Equals({
                u"previous_size_gib": 20,
                u"new_size_gib": 300,
                u"filesystem_grown": True,
                u"duration_ms": 4500,
            }),
        )

    def test_negative_duration(self):
        """
        A duration cannot be negative.
        """
        self.assertRaises(
            InvariantException, ResizeOutcome,
            previous_size_gib=20, new_size_gib=300, filesystem_grown=True,
            duration_ms=-1,
        )
