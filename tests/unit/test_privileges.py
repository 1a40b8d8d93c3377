"""
Unit tests for privilege sets.

Tests cover:
- Empty sets and AND/OR logic over privilege flags
- Neutral conditions when no record is given
- Introspection (flags checked, fields referenced, user comparisons)
- Serialization
"""

import pytest

from dcp.mdstore import MetadataStoreError, PrivilegeSet, User


ADMIN = User(user_id=1, name="admin", privileges=frozenset({3}))
EDITOR = User(user_id=2, name="editor", privileges=frozenset({5}))
NOBODY = User(user_id=3, name="nobody")


class TestPrivilegeLogic:
    """Tests for meets_requirements without records."""

    def test_empty_set_met_by_everyone(self):
        """A set with no components lets everyone through."""
        rules = PrivilegeSet()
        assert rules.is_empty
        assert rules.meets_requirements(NOBODY)
        assert rules.meets_requirements(User.anonymous())

    def test_or_needs_one_flag(self):
        """OR logic passes with any listed flag."""
        rules = PrivilegeSet("OR", privileges=[3, 5])
        assert rules.meets_requirements(ADMIN)
        assert rules.meets_requirements(EDITOR)
        assert not rules.meets_requirements(NOBODY)

    def test_and_needs_every_flag(self):
        """AND logic requires all listed flags."""
        rules = PrivilegeSet("AND", privileges=[3, 5])
        assert not rules.meets_requirements(ADMIN)
        both = User(user_id=4, privileges=frozenset({3, 5}))
        assert rules.meets_requirements(both)

    def test_nested_subset(self):
        """Subsets are evaluated as one component."""
        rules = PrivilegeSet("AND", privileges=[3])
        rules.add_subset(PrivilegeSet("OR", privileges=[5, 99]))
        assert not rules.meets_requirements(ADMIN)
        assert rules.meets_requirements(User(user_id=5, privileges=frozenset({3, 99})))

    def test_conditions_neutral_without_record(self):
        """Conditions that cannot be evaluated do not decide the outcome."""
        and_rules = PrivilegeSet("AND")
        and_rules.add_condition(10, "==", 1)
        assert and_rules.meets_requirements(NOBODY)

        or_rules = PrivilegeSet("OR")
        or_rules.add_condition(10, "==", 1)
        assert not or_rules.meets_requirements(NOBODY)

    def test_bad_logic_and_operator(self):
        """Unknown logic or operators are rejected."""
        with pytest.raises(MetadataStoreError):
            PrivilegeSet("XOR")
        with pytest.raises(MetadataStoreError):
            PrivilegeSet().add_condition(1, "~=", 2)


class TestPrivilegeIntrospection:
    """Tests for what a rule set looks at."""

    def test_flags_checked_includes_subsets(self):
        """Flags from nested subsets are reported."""
        rules = PrivilegeSet("OR", privileges=[3])
        rules.add_subset(PrivilegeSet(privileges=[7]))
        assert rules.privilege_flags_checked() == {3, 7}

    def test_checks_field(self):
        """Fields referenced by conditions are reported, nested or not."""
        rules = PrivilegeSet()
        inner = PrivilegeSet()
        inner.add_condition(42, ">", 1)
        rules.add_subset(inner)
        assert rules.checks_field(42)
        assert not rules.checks_field(43)

    def test_user_comparisons(self):
        """Only conditions against the current user count as user comparisons."""
        rules = PrivilegeSet("OR")
        rules.add_condition(11, "==", PrivilegeSet.CURRENT_USER)
        rules.add_condition(12, "==", 1)
        rules.add_condition(13, "!=", PrivilegeSet.CURRENT_USER)
        assert rules.fields_with_user_comparisons() == {11, 13}
        assert rules.fields_with_user_comparisons("==") == {11}


class TestPrivilegeSerialization:
    """Tests for to_dict / from_dict."""

    def test_round_trip(self):
        """Serialized sets rebuild equal sets."""
        rules = PrivilegeSet("OR", privileges=[3])
        rules.add_condition(11, "==", PrivilegeSet.CURRENT_USER)
        rules.add_subset(PrivilegeSet("AND", privileges=[5]))
        assert PrivilegeSet.from_dict(rules.to_dict()) == rules

    def test_from_empty(self):
        """None and {} give the empty set."""
        assert PrivilegeSet.from_dict(None).is_empty
        assert PrivilegeSet.from_dict({}).is_empty
