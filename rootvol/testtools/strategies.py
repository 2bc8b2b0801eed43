# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Hypothesis strategies for rootvol records.
"""

import string

from hypothesis.strategies import (
    booleans, builds, integers, just, lists, sampled_from, text,
)

from ..model import BlockDevice, InstanceDescriptor, VolumeSizingRule
from ..policy import MAX_VOLUME_SIZE_GIB, normalize_pattern


instance_families = builds(
    lambda letter, rest: letter + rest,
    sampled_from(string.ascii_lowercase),
    text(alphabet=string.ascii_lowercase + string.digits,
         min_size=1, max_size=4),
)
"""
EC2 instance families.

e.g. ``c6i``, ``m5d``.
"""

instance_sizes = sampled_from([
    u"nano", u"micro", u"small", u"medium", u"large", u"xlarge",
    u"2xlarge", u"4xlarge", u"8xlarge", u"12xlarge", u"metal",
])

instance_types = builds(
    lambda family, size: family + u"." + size,
    instance_families, instance_sizes,
)
"""
EC2 instance types.

e.g. ``c6i.2xlarge``.
"""

volume_sizes = integers(min_value=1, max_value=MAX_VOLUME_SIZE_GIB)


def block_devices(local_ephemeral=booleans()):
    """
    :param local_ephemeral: A strategy for ``is_local_ephemeral``.
    """
    return builds(
        BlockDevice,
        device_path=builds(
            lambda n: u"/dev/nvme{}n1".format(n),
            integers(min_value=0, max_value=27)),
        is_local_ephemeral=local_ephemeral,
        size_gib=integers(min_value=0, max_value=MAX_VOLUME_SIZE_GIB),
    )


def instance_descriptors(instance_type=instance_types,
                         disks=lists(block_devices(), max_size=4)):
    """
    :param instance_type: A strategy for the instance type.
    :param disks: A strategy for the list of attached disks.
    """
    return builds(
        InstanceDescriptor,
        instance_id=builds(
            lambda n: u"i-{:017x}".format(n),
            integers(min_value=0, max_value=16 ** 17 - 1)),
        instance_type=instance_type,
        attached_local_disks=disks,
        root_volume_id=builds(
            lambda n: u"vol-{:017x}".format(n),
            integers(min_value=0, max_value=16 ** 17 - 1)),
        root_device_path=just(u"/dev/xvda"),
    )


without_local_ephemeral = lists(block_devices(just(False)), max_size=4)
"""
Lists of disks none of which is local ephemeral.
"""

with_local_ephemeral = builds(
    lambda before, ephemeral, after: before + [ephemeral] + after,
    without_local_ephemeral,
    block_devices(just(True)),
    lists(block_devices(), max_size=2),
)
"""
Lists of disks at least one of which is local ephemeral.
"""

sizing_rules = builds(
    VolumeSizingRule,
    instance_type_pattern=instance_types,
    target_size_gib=volume_sizes,
)
"""
Rules for exact instance types.
"""

rule_lists = lists(
    sizing_rules,
    unique_by=lambda rule: normalize_pattern(rule.instance_type_pattern),
    max_size=10,
)
"""
Lists of rules without duplicate patterns.
"""
