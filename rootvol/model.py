# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.test.test_model -*-

"""
Records passed between the components of a bootstrap run.

Every record is immutable and built fresh for each run; the live volume is
always the source of truth for its current size.
"""

from constantly import Names, NamedConstant, Values, ValueConstant
from pyrsistent import PClass, field, pvector_field

from .common.algebraic import TaggedUnionInvariant


def _positive(value):
    return (value > 0, "must be positive")


def _not_negative(value):
    return (value >= 0, "must not be negative")


class BlockDevice(PClass):
    """
    A disk attached to the instance.

    :ivar str device_path: The OS path of the device, e.g. ``/dev/nvme1n1``.
    :ivar bool is_local_ephemeral: Whether this is instance storage that is
        lost when the instance stops.  Such disks are never resized.
    :ivar int size_gib: The size of the device in GiB.
    """
    device_path = field(type=str, mandatory=True)
    is_local_ephemeral = field(type=bool, mandatory=True)
    size_gib = field(type=int, mandatory=True, invariant=_not_negative)


class InstanceDescriptor(PClass):
    """
    A snapshot of the instance a bootstrap run executes on.

    :ivar str instance_id: The EC2 instance identifier.
    :ivar str instance_type: The EC2 instance type, e.g. ``c6i.2xlarge``.
    :ivar attached_local_disks: The disks found on the instance, in the order
        the OS lists them.
    :ivar str root_volume_id: The EBS volume backing the root device.
    :ivar str root_device_path: The device the root filesystem lives on, as
        named by the EC2 API (e.g. ``/dev/xvda``).
    """
    instance_id = field(type=str, mandatory=True)
    instance_type = field(type=str, mandatory=True)
    attached_local_disks = pvector_field(BlockDevice)
    root_volume_id = field(type=str, mandatory=True)
    root_device_path = field(type=str, mandatory=True)

    def has_local_ephemeral_disk(self):
        return any(
            disk.is_local_ephemeral for disk in self.attached_local_disks
        )


class VolumeSizingRule(PClass):
    """
    One row of the rule table.

    :ivar str instance_type_pattern: An exact instance type (``c6i.2xlarge``),
        an instance family (``c6i``) or a prefix ending in ``*`` (``c6*``).
    :ivar int target_size_gib: The size the root volume is grown to.
    :ivar iops: The gp3 IOPS to request along with the resize, or ``None`` to
        leave it unchanged.
    :ivar throughput: The gp3 throughput in MiB/s to request along with the
        resize, or ``None`` to leave it unchanged.
    """
    instance_type_pattern = field(type=str, mandatory=True)
    target_size_gib = field(type=int, mandatory=True, invariant=_positive)
    iops = field(type=(int, type(None)), initial=None)
    throughput = field(type=(int, type(None)), initial=None)


class DecisionKinds(Names):
    """
    The two kinds of ``ResizeDecision``.
    """
    RESIZE = NamedConstant()
    SKIP = NamedConstant()


class SkipReasons(Values):
    """
    Why a run leaves the root volume at its default size.
    """
    LOCAL_EPHEMERAL_PRESENT = ValueConstant(u"local-ephemeral-present")
    NO_MATCHING_RULE = ValueConstant(u"no-matching-rule")


class ResizeDecision(PClass):
    """
    The single decision made for a run.

    A ``RESIZE`` decision carries ``target_size_gib`` and the pattern of the
    rule that produced it; a ``SKIP`` decision carries a ``reason``.
    """
    kind = field(mandatory=True, type=NamedConstant)
    target_size_gib = field(type=int, invariant=_positive)
    rule_pattern = field(type=str)
    iops = field(type=(int, type(None)), initial=None)
    throughput = field(type=(int, type(None)), initial=None)
    reason = field(type=ValueConstant)

    __invariant__ = TaggedUnionInvariant(
        tag_attribute='kind',
        attributes_for_tag={
            DecisionKinds.RESIZE: {'target_size_gib', 'rule_pattern'},
            DecisionKinds.SKIP: {'reason'},
        },
    )

    @property
    def is_resize(self):
        return self.kind is DecisionKinds.RESIZE

    def to_log_fields(self):
        """
        :return: A JSON-friendly ``dict`` describing this decision.
        """
        if self.is_resize:
            fields = {
                u"kind": u"resize",
                u"target_size_gib": self.target_size_gib,
                u"rule_pattern": self.rule_pattern,
            }
            if self.iops is not None:
                fields[u"iops"] = self.iops
            if self.throughput is not None:
                fields[u"throughput"] = self.throughput
            return fields
        return {u"kind": u"skip", u"reason": self.reason.value}


def resize(target_size_gib, rule_pattern, iops=None, throughput=None):
    """
    Build a ``RESIZE`` decision.
    """
    return ResizeDecision(
        kind=DecisionKinds.RESIZE,
        target_size_gib=target_size_gib,
        rule_pattern=rule_pattern,
        iops=iops,
        throughput=throughput,
    )


def skip(reason):
    """
    Build a ``SKIP`` decision.

    :param ValueConstant reason: One of ``SkipReasons``.
    """
    return ResizeDecision(kind=DecisionKinds.SKIP, reason=reason)


class ResizeOutcome(PClass):
    """
    What the executor did to a volume.

    :ivar int previous_size_gib: The volume size before the run.
    :ivar int new_size_gib: The volume size after the run.
    :ivar bool filesystem_grown: Whether the root filesystem was grown.
    :ivar int duration_ms: How long the resize took.
    """
    previous_size_gib = field(type=int, mandatory=True)
    new_size_gib = field(type=int, mandatory=True)
    filesystem_grown = field(type=bool, mandatory=True)
    duration_ms = field(type=int, mandatory=True, invariant=_not_negative)

    def to_log_fields(self):
        return {
            u"previous_size_gib": self.previous_size_gib,
            u"new_size_gib": self.new_size_gib,
            u"filesystem_grown": self.filesystem_grown,
            u"duration_ms": self.duration_ms,
        }


class Noop(PClass):
    """
    The executor changed nothing.
    """


NOOP = Noop()


class VolumeStatus(PClass):
    """
    The provider's current view of a volume.

    :ivar str volume_id: The volume identifier.
    :ivar str state: The volume state, e.g. ``in-use``.
    :ivar int size_gib: The provisioned size.  EBS reports the requested size
        as soon as a modification starts.
    :ivar modification_state: The state of the most recent modification
        (``modifying``, ``optimizing``, ``completed`` or ``failed``), or
        ``None`` if the volume was never modified.
    """
    volume_id = field(type=str, mandatory=True)
    state = field(type=str, mandatory=True)
    size_gib = field(type=int, mandatory=True)
    modification_state = field(type=(str, type(None)), initial=None)
