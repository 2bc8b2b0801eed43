# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.test.test_policy -*-

"""
Map an instance to the size its root volume should have.

The rule table maps instance type patterns to sizes.  A pattern is one of:

* an exact instance type, ``c6i.2xlarge``;
* an instance family, ``c6i`` (``c6i.*`` is the same key), matching every
  size in that family;
* a prefix ending in ``*``, ``c6*``, matching any type that starts with it.
  A lone ``*`` matches every type.

For a given instance type the most specific matching rule wins: exact over
family over prefix, and a longer prefix over a shorter one.  Two rules with
the same pattern after normalization would be ambiguous, so a table with
duplicates cannot be built.
"""

import re

from constantly import Values, ValueConstant
from pyrsistent import PClass, field, pvector_field

from .exceptions import ConfigurationError
from .model import VolumeSizingRule, SkipReasons, resize, skip

# gp3 performance limits:
# https://docs.aws.amazon.com/ebs/latest/userguide/general-purpose.html
GP3_MIN_IOPS = 3000
GP3_MAX_IOPS = 16000
GP3_MAX_IOPS_PER_GIB = 500
GP3_MIN_THROUGHPUT = 125
GP3_MAX_THROUGHPUT = 1000
# MiB/s of throughput allowed per provisioned IOPS.
GP3_THROUGHPUT_PER_IOPS = 0.25

# The largest EBS volume, in GiB.
MAX_VOLUME_SIZE_GIB = 16384

_PATTERN_CHARACTERS = re.compile(r"^[a-z0-9.\-]*\*?$")


class PatternKinds(Values):
    """
    The kinds of instance type pattern, valued by how specific they are.
    """
    PREFIX = ValueConstant(0)
    FAMILY = ValueConstant(1)
    EXACT = ValueConstant(2)


def normalize_pattern(pattern):
    """
    Bring an instance type pattern into its canonical form.

    :param str pattern: A pattern as written in configuration.

    :raise ConfigurationError: If the pattern is not a valid pattern.
    :return: The canonical pattern.
    """
    if not isinstance(pattern, str):
        raise ConfigurationError(
            u"Instance type pattern must be a string, not {!r}.".format(
                pattern))
    normalized = pattern.strip().lower()
    if normalized.endswith(u".*"):
        normalized = normalized[:-2]
    if not normalized or _PATTERN_CHARACTERS.match(normalized) is None:
        raise ConfigurationError(
            u"Invalid instance type pattern {!r}.".format(pattern))
    if normalized.startswith(u".") or normalized.endswith(u"."):
        raise ConfigurationError(
            u"Invalid instance type pattern {!r}.".format(pattern))
    return normalized


def pattern_kind(normalized):
    """
    :param str normalized: A pattern returned by ``normalize_pattern``.

    :return: The ``PatternKinds`` constant of the pattern.
    """
    if normalized.endswith(u"*"):
        return PatternKinds.PREFIX
    if u"." in normalized:
        return PatternKinds.EXACT
    return PatternKinds.FAMILY


class _CompiledRule(PClass):
    """
    A rule together with its normalized pattern.
    """
    rule = field(type=VolumeSizingRule, mandatory=True)
    pattern = field(type=str, mandatory=True)
    kind = field(type=ValueConstant, mandatory=True)

    @property
    def literal(self):
        if self.kind is PatternKinds.PREFIX:
            return self.pattern[:-1]
        return self.pattern

    @property
    def specificity(self):
        return (self.kind.value, len(self.literal))

    def matches(self, instance_type):
        if self.kind is PatternKinds.EXACT:
            return instance_type == self.literal
        if self.kind is PatternKinds.FAMILY:
            return instance_type.startswith(self.literal + u".")
        return instance_type.startswith(self.literal)


def _validate_rule(rule):
    """
    Check the size and performance parameters of a rule.

    :raise ConfigurationError: If the rule asks for something EBS cannot
        provide.
    """
    pattern = rule.instance_type_pattern
    if rule.target_size_gib > MAX_VOLUME_SIZE_GIB:
        raise ConfigurationError(
            u"Rule {!r}: size {} GiB exceeds the EBS maximum of {} GiB."
            .format(pattern, rule.target_size_gib, MAX_VOLUME_SIZE_GIB))
    if rule.iops is not None:
        if not GP3_MIN_IOPS <= rule.iops <= GP3_MAX_IOPS:
            raise ConfigurationError(
                u"Rule {!r}: iops must be between {} and {}, not {}."
                .format(pattern, GP3_MIN_IOPS, GP3_MAX_IOPS, rule.iops))
        if rule.iops > rule.target_size_gib * GP3_MAX_IOPS_PER_GIB:
            raise ConfigurationError(
                u"Rule {!r}: {} iops is more than {} per GiB of a {} GiB "
                u"volume.".format(pattern, rule.iops, GP3_MAX_IOPS_PER_GIB,
                                   rule.target_size_gib))
    if rule.throughput is not None:
        if not GP3_MIN_THROUGHPUT <= rule.throughput <= GP3_MAX_THROUGHPUT:
            raise ConfigurationError(
                u"Rule {!r}: throughput must be between {} and {} MiB/s, "
                u"not {}.".format(pattern, GP3_MIN_THROUGHPUT,
                                  GP3_MAX_THROUGHPUT, rule.throughput))
        if (rule.iops is not None and
                rule.throughput > rule.iops * GP3_THROUGHPUT_PER_IOPS):
            raise ConfigurationError(
                u"Rule {!r}: throughput {} MiB/s needs at least {} iops."
                .format(pattern, rule.throughput,
                        int(rule.throughput / GP3_THROUGHPUT_PER_IOPS)))


class RuleTable(PClass):
    """
    An unambiguous, ordered table of ``VolumeSizingRule``.

    Build instances with ``RuleTable.from_rules`` so that patterns are
    normalized and checked for duplicates.
    """
    _compiled = pvector_field(_CompiledRule)

    @classmethod
    def from_rules(cls, rules):
        """
        :param rules: An iterable of ``VolumeSizingRule``.

        :raise ConfigurationError: If two rules have the same pattern after
            normalization, or any rule is invalid.
        :return: A ``RuleTable``.
        """
        seen = {}
        compiled = []
        for rule in rules:
            pattern = normalize_pattern(rule.instance_type_pattern)
            if pattern in seen:
                raise ConfigurationError(
                    u"Duplicate rule for instance type pattern {!r} "
                    u"(also given as {!r}).".format(
                        rule.instance_type_pattern, seen[pattern]))
            seen[pattern] = rule.instance_type_pattern
            _validate_rule(rule)
            compiled.append(_CompiledRule(
                rule=rule, pattern=pattern, kind=pattern_kind(pattern),
            ))
        return cls(_compiled=compiled)

    @property
    def rules(self):
        """
        The rules, in the order they were given.
        """
        return [compiled.rule for compiled in self._compiled]

    def __len__(self):
        return len(self._compiled)

    def match(self, instance_type):
        """
        Find the most specific rule for an instance type.

        :param str instance_type: An EC2 instance type.

        :return: The matching ``VolumeSizingRule`` or ``None``.
        """
        instance_type = instance_type.strip().lower()
        candidates = [
            compiled for compiled in self._compiled
            if compiled.matches(instance_type)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda c: c.specificity).rule


def _rule_from_value(pattern, value):
    """
    Build a rule from one entry of a configured mapping.

    :param pattern: The mapping key.
    :param value: Either an integer size in GiB or a mapping with a
        ``size`` key and optional ``iops`` and ``throughput`` keys.
    """
    if isinstance(value, bool):
        raise ConfigurationError(
            u"Rule {!r}: size must be an integer, not {!r}.".format(
                pattern, value))
    if isinstance(value, int):
        size, iops, throughput = value, None, None
    elif isinstance(value, dict):
        unknown = set(value) - {u"size", u"iops", u"throughput"}
        if unknown:
            raise ConfigurationError(
                u"Rule {!r}: unknown keys {}.".format(
                    pattern, u", ".join(sorted(map(str, unknown)))))
        if u"size" not in value:
            raise ConfigurationError(
                u"Rule {!r}: missing size.".format(pattern))
        size = value[u"size"]
        iops = value.get(u"iops")
        throughput = value.get(u"throughput")
    else:
        raise ConfigurationError(
            u"Rule {!r}: expected a size or a mapping, not {!r}.".format(
                pattern, value))
    for name, number in [(u"size", size), (u"iops", iops),
                         (u"throughput", throughput)]:
        if number is not None and (
                isinstance(number, bool) or not isinstance(number, int)):
            raise ConfigurationError(
                u"Rule {!r}: {} must be an integer, not {!r}.".format(
                    pattern, name, number))
    if size <= 0:
        raise ConfigurationError(
            u"Rule {!r}: size must be positive, not {}.".format(
                pattern, size))
    return VolumeSizingRule(
        instance_type_pattern=pattern,
        target_size_gib=size,
        iops=iops,
        throughput=throughput,
    )


def rule_table_from_configuration(rules):
    """
    Build a ``RuleTable`` from configuration.

    :param dict rules: Mapping of instance type pattern to either a size in
        GiB or a mapping with ``size``, ``iops`` and ``throughput``.

    :raise ConfigurationError: If the mapping is malformed or ambiguous.
    :return: A ``RuleTable``.
    """
    if not isinstance(rules, dict):
        raise ConfigurationError(
            u"Rules must be a mapping of instance type to size, not {!r}."
            .format(rules))
    return RuleTable.from_rules(
        _rule_from_value(pattern, value)
        for pattern, value in rules.items()
    )


def decide(descriptor, rules):
    """
    Decide what to do with the root volume of an instance.

    This is a pure function of its arguments.

    :param InstanceDescriptor descriptor: The instance.
    :param rules: A ``RuleTable``, or a sequence of ``VolumeSizingRule`` which
        is turned into one (so duplicates are rejected before deciding).

    :return: A ``ResizeDecision``.
    """
    if not isinstance(rules, RuleTable):
        rules = RuleTable.from_rules(rules)

    # Local NVMe is reserved for kubelet, containerd and logs; the EBS root
    # volume keeps its default size.
    if descriptor.has_local_ephemeral_disk():
        return skip(SkipReasons.LOCAL_EPHEMERAL_PRESENT)

    rule = rules.match(descriptor.instance_type)
    if rule is None:
        return skip(SkipReasons.NO_MATCHING_RULE)
    return resize(
        target_size_gib=rule.target_size_gib,
        rule_pattern=rule.instance_type_pattern,
        iops=rule.iops,
        throughput=rule.throughput,
    )
