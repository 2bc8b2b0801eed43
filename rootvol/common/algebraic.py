# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.common.test.test_algebraic -*-

"""
An invariant for ``PClass`` records that are one of several kinds, each kind
carrying its own attributes.

``ResizeDecision`` is the motivating case: a resize carries a target size
and the rule it came from, a skip carries only its reason, and no decision
may carry both.
"""

from constantly import NamedConstant
from pyrsistent import PClass, field, pmap_field, CheckedPSet, pset

__all__ = ["TaggedUnionInvariant"]


class _AttributeNames(CheckedPSet):
    __type__ = str


def _names(attributes):
    return u", ".join(u"`{}`".format(name) for name in sorted(attributes))


class TaggedUnionInvariant(PClass):
    """
    A ``PClass`` ``__invariant__`` tying optional attributes to the value of
    a tag attribute.

    A value satisfies it when its tag is one of the ``NamedConstant`` keys of
    ``attributes_for_tag`` and, of the attributes named anywhere in
    ``attributes_for_tag``, it has exactly those listed for its tag.  Other
    attributes are not checked.

    :ivar str tag_attribute: The attribute holding the tag.
    :ivar attributes_for_tag: Tag to the names of the attributes a value with
        that tag must have.
    """
    tag_attribute = field(str, mandatory=True)
    attributes_for_tag = pmap_field(
        key_type=NamedConstant,
        value_type=_AttributeNames,
        optional=True,
    )

    @property
    def allowed_tags(self):
        return pset(self.attributes_for_tag)

    @property
    def all_attributes(self):
        """
        Every attribute whose presence depends on the tag.
        """
        return pset(
            name
            for names in self.attributes_for_tag.values()
            for name in names
        )

    def _present(self, value):
        return pset(
            name for name in self.all_attributes if hasattr(value, name)
        )

    def __call__(self, value):
        """
        :return: A ``(bool, str)`` pair, as ``pyrsistent`` invariants
            return: whether ``value`` is well formed and, if not, what is
            wrong.
        """
        tag = getattr(value, self.tag_attribute, None)
        if tag not in self.allowed_tags:
            return (False, u"{} must be one of {}, not {!r}.".format(
                self.tag_attribute,
                _names(t.name for t in self.allowed_tags), tag))
        required = self.attributes_for_tag[tag]
        present = self._present(value)
        missing = required - present
        if missing:
            return (False, u"{} `{}` requires {}.".format(
                self.tag_attribute, tag.name, _names(missing)))
        unexpected = present - required
        if unexpected:
            return (False, u"{} `{}` does not allow {}.".format(
                self.tag_attribute, tag.name, _names(unexpected)))
        return (True, u"")
