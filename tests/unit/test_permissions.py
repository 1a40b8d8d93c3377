"""
Unit tests for the permission evaluator.

Tests cover:
- User classes built from schema-relevant privilege flags
- Schema and field level checks, including "modify"
- Persisted view results shared by a user class
- Per-user evaluation when rules compare against the current user
- Expiring results for relative-date rules
- Visible record counts per term
- Dropping persisted results when viewing rules or fields change
"""

from datetime import datetime

import pytest

from dcp.mdstore import IllegalAttributeError, InvalidValueError, PrivilegeSet, User


def _permanent(store, user):
    record = store.records.create(0, user)
    record.make_permanent()
    return record


class TestUserClasses:
    """Tests for compute_user_class."""

    def test_same_relevant_flags_share_a_class(self, store, alice, bob, carol):
        """Only flags the viewing rules look at decide the class."""
        store.registry.set_schema_privileges(0, "viewing", PrivilegeSet("OR", privileges=[3]))
        evaluator = store.evaluator

        assert evaluator.compute_user_class(alice, 0) == evaluator.compute_user_class(bob, 0)
        assert evaluator.compute_user_class(alice, 0) != evaluator.compute_user_class(carol, 0)

    def test_anonymous_has_its_own_class(self, store, carol):
        """The anonymous user never shares a class with a signed-in user."""
        evaluator = store.evaluator
        assert evaluator.compute_user_class(User.anonymous(), 0) != evaluator.compute_user_class(carol, 0)

    def test_field_rules_count_as_relevant(self, store, alice, bob):
        """Flags checked by field viewing rules split classes too."""
        title = store.registry.add_field(0, "Text", "Title")
        assert store.evaluator.compute_user_class(alice, 0) == store.evaluator.compute_user_class(bob, 0)

        title.set_privileges("viewing", PrivilegeSet(privileges=[99]))

        assert store.evaluator.compute_user_class(alice, 0) != store.evaluator.compute_user_class(bob, 0)

    def test_class_results_are_shared(self, store, alice, bob, carol):
        """Users of one class reuse a single persisted row."""
        store.registry.set_schema_privileges(0, "viewing", PrivilegeSet("OR", privileges=[3]))
        record = _permanent(store, alice)

        assert store.evaluator.filter_viewable(alice, [record.id]) == [record.id]
        assert store.evaluator.filter_viewable(bob, [record.id]) == [record.id]
        assert store.db.query_value("SELECT COUNT(DISTINCT user_class) FROM user_perms_cache") == 1

        assert store.evaluator.filter_viewable(carol, [record.id]) == []
        assert store.db.query_value("SELECT COUNT(DISTINCT user_class) FROM user_perms_cache") == 2


class TestRecordChecks:
    """Tests for schema-level checks."""

    def test_anonymous_cannot_view_temporary(self, store, alice):
        """Temporary records are hidden from the anonymous user."""
        record = store.records.create(0, alice)
        assert not record.user_can_view(User.anonymous())
        assert record.user_can_view(alice)

        record.make_permanent()
        assert record.user_can_view(User.anonymous())

    def test_modify_follows_record_state(self, store, alice, bob):
        """Modify uses authoring rules while temporary and editing rules after."""
        store.registry.set_schema_privileges(0, "authoring", PrivilegeSet(privileges=[50]))
        store.registry.set_schema_privileges(0, "editing", PrivilegeSet(privileges=[99]))
        record = store.records.create(0, alice)

        assert record.user_can_modify(bob)
        assert not record.user_can_modify(alice)

        record.make_permanent()

        assert record.user_can_modify(alice)
        assert not record.user_can_modify(bob)

    def test_unknown_check(self, store, alice):
        """Unknown check names are rejected."""
        record = store.records.create(0, alice)
        with pytest.raises(InvalidValueError):
            store.evaluator.check_schema_permissions(alice, record, "delete")

    def test_unknown_ids_dropped(self, store, alice):
        """filter_viewable drops ids that do not exist."""
        record = _permanent(store, alice)
        assert store.evaluator.filter_viewable(alice, [999, record.id]) == [record.id]
        assert store.evaluator.filter_viewable(alice, []) == []


class TestFieldChecks:
    """Tests for field-level checks."""

    def test_disabled_and_uneditable_fields(self, store, alice):
        """Disabled fields fail every check; uneditable ones fail all but view."""
        title = store.registry.add_field(0, "Text", "Title")
        record = store.records.create(0, alice)

        title.editable = False
        assert record.user_can_view_field(alice, title)
        assert not record.user_can_edit_field(alice, title)

        title.enabled = False
        assert not record.user_can_view_field(alice, title)

    def test_field_rules(self, store, alice, bob):
        """Field rules apply on top of schema rules."""
        title = store.registry.add_field(0, "Text", "Title")
        title.set_privileges("viewing", PrivilegeSet(privileges=[99]))
        record = store.records.create(0, alice)

        assert record.user_can_view_field(alice, title)
        assert not record.user_can_view_field(bob, title)


class TestCurrentUserRules:
    """Rules comparing a User field with the acting user."""

    @pytest.fixture
    def owned(self, store, alice, bob):
        owner = store.registry.add_field(0, "User", "Owner")
        rules = PrivilegeSet("OR", privileges=[77])
        rules.add_condition(owner.id, "==", PrivilegeSet.CURRENT_USER)
        store.registry.set_schema_privileges(0, "viewing", rules)

        mine = _permanent(store, alice)
        mine.set(owner, alice)
        theirs = _permanent(store, alice)
        theirs.set(owner, bob)
        return mine, theirs

    def test_users_of_one_class_see_their_own(self, store, alice, bob, owned):
        """Two users sharing a class each see only the record they own."""
        mine, theirs = owned
        assert store.evaluator.compute_user_class(alice, 0) == store.evaluator.compute_user_class(bob, 0)

        assert store.evaluator.filter_viewable(alice, [mine.id, theirs.id]) == [mine.id]
        assert store.evaluator.filter_viewable(bob, [mine.id, theirs.id]) == [theirs.id]

    def test_order_does_not_matter(self, store, alice, bob, owned):
        """Evaluating the other user first gives the same answers."""
        mine, theirs = owned
        assert store.evaluator.filter_viewable(bob, [mine.id, theirs.id]) == [theirs.id]
        assert store.evaluator.filter_viewable(alice, [mine.id, theirs.id]) == [mine.id]

    def test_anonymous_sees_nothing(self, store, owned):
        """The anonymous user never matches a current-user comparison."""
        mine, theirs = owned
        assert store.evaluator.filter_viewable(User.anonymous(), [mine.id, theirs.id]) == []


class TestExpiration:
    """Tests for results that expire."""

    @pytest.fixture
    def embargo(self, store):
        field = store.registry.add_field(0, "Timestamp", "Embargo Until")
        rules = PrivilegeSet("AND")
        rules.add_condition(field.id, "<", "now")
        store.registry.set_schema_privileges(0, "viewing", rules)
        return field

    def test_future_date_sets_expiration(self, store, alice, embargo):
        """A rule that will flip records when it flips."""
        record = _permanent(store, alice)
        record.set(embargo, "2999-01-01 00:00:00")

        assert not record.user_can_view(alice)
        assert record.view_expiration == datetime(2999, 1, 1)

    def test_past_date_never_expires(self, store, alice, embargo):
        """A rule that already passed has no expiration."""
        record = _permanent(store, alice)
        record.set(embargo, "2000-01-01 00:00:00")

        assert record.user_can_view(alice)
        assert record.view_expiration is None

    def test_persisted_with_expiration(self, store, alice, embargo):
        """Persisted rows carry the expiration date."""
        record = _permanent(store, alice)
        record.set(embargo, "2999-01-01 00:00:00")

        assert store.evaluator.filter_viewable(alice, [record.id]) == []
        assert store.db.query_value(
            "SELECT expiration_date FROM user_perms_cache WHERE record_id = ?", (record.id,)
        ) == "2999-01-01 00:00:00"

    def test_purge_expired(self, store, alice):
        """Rows past their expiration date are purged."""
        record = _permanent(store, alice)
        store.db.execute(
            "INSERT INTO user_perms_cache (record_id, user_class, can_view, expiration_date) VALUES (?, ?, ?, ?)",
            (record.id, "stale", 1, "2000-01-01 00:00:00"),
        )
        assert store.evaluator.purge_expired() == 1
        assert store.evaluator.purge_expired() == 0


class TestVisibleRecordCounts:
    """Tests for visible_record_count."""

    def test_counts_are_persisted_and_cleared(self, store, alice):
        """Counts are cached per term and dropped when a record changes."""
        keywords = store.registry.add_field(0, "ControlledName", "Keywords")
        alpha = keywords.add_term("Alpha")
        first = _permanent(store, alice)
        first.set(keywords, alpha)
        second = _permanent(store, alice)
        second.set(keywords, alpha)

        assert store.evaluator.visible_record_count(alice, keywords, alpha) == 2
        assert store.db.query_value("SELECT COUNT(*) FROM visible_record_counts") == 1

        store.evaluator.clear_record(first.id)
        assert store.db.query_value("SELECT COUNT(*) FROM visible_record_counts") == 0

    def test_new_assignment_invalidates_count(self, store, alice):
        """Assigning the term to another record refreshes the count."""
        keywords = store.registry.add_field(0, "ControlledName", "Keywords")
        alpha = keywords.add_term("Alpha")
        first = _permanent(store, alice)
        first.set(keywords, alpha)
        assert store.evaluator.visible_record_count(alice, keywords, alpha) == 1

        second = _permanent(store, alice)
        second.set(keywords, alpha)

        assert store.evaluator.visible_record_count(alice, keywords, alpha) == 2

    def test_temporary_records_not_counted(self, store, alice):
        """Only permanent records count."""
        keywords = store.registry.add_field(0, "ControlledName", "Keywords")
        alpha = keywords.add_term("Alpha")
        draft = store.records.create(0, alice)
        draft.set(keywords, alpha)

        assert store.evaluator.visible_record_count(alice, keywords, alpha) == 0


class TestCacheInvalidation:
    """Persisted results after rule and field changes."""

    def test_new_viewing_rules_replace_cached_results(self, store, alice):
        """New rules over the same flags are applied to cached records."""
        released = store.registry.add_field(0, "Flag", "Released")
        record = _permanent(store, alice)
        record.set(released, False)
        anonymous = User.anonymous()
        assert store.evaluator.filter_viewable(anonymous, [record.id]) == [record.id]

        rules = PrivilegeSet("AND")
        rules.add_condition(released.id, "==", 1)
        store.registry.set_schema_privileges(0, "viewing", rules)

        assert store.evaluator.filter_viewable(anonymous, [record.id]) == []

    def test_rule_change_drops_term_counts(self, store, alice):
        """Visible counts of the schema's terms are dropped with the rules."""
        keywords = store.registry.add_field(0, "ControlledName", "Keywords")
        alpha = keywords.add_term("Alpha")
        record = _permanent(store, alice)
        record.set(keywords, alpha)
        assert store.evaluator.visible_record_count(alice, keywords, alpha) == 1

        store.registry.set_schema_privileges(0, "viewing", PrivilegeSet("OR", privileges=[3]))

        assert store.db.query_value("SELECT COUNT(*) FROM visible_record_counts") == 0
        assert store.db.query_value("SELECT COUNT(*) FROM user_perms_cache") == 0

    def test_field_viewing_rules_clear_cache(self, store, alice):
        """Setting a field's viewing rules drops the schema's cached rows."""
        title = store.registry.add_field(0, "Text", "Title")
        record = _permanent(store, alice)
        store.evaluator.filter_viewable(alice, [record.id])
        assert store.db.query_value("SELECT COUNT(*) FROM user_perms_cache") == 1

        title.set_privileges("viewing", PrivilegeSet("OR", privileges=[3]))

        assert store.db.query_value("SELECT COUNT(*) FROM user_perms_cache") == 0

    def test_editing_rules_keep_cache(self, store, alice):
        """Rules that do not affect viewing leave cached rows alone."""
        record = _permanent(store, alice)
        store.evaluator.filter_viewable(alice, [record.id])

        store.registry.set_schema_privileges(0, "editing", PrivilegeSet("OR", privileges=[3]))

        assert store.db.query_value("SELECT COUNT(*) FROM user_perms_cache") == 1

    def test_dropping_a_field_clears_cache(self, store, alice):
        """Dropping a field drops the schema's cached rows."""
        released = store.registry.add_field(0, "Flag", "Released")
        record = _permanent(store, alice)
        store.evaluator.filter_viewable(alice, [record.id])

        released.drop()

        assert store.db.query_value("SELECT COUNT(*) FROM user_perms_cache") == 0

    def test_unknown_level(self, store):
        """Unknown privilege levels are refused with the store's error."""
        with pytest.raises(IllegalAttributeError):
            store.registry.set_schema_privileges(0, "deleting", PrivilegeSet())
