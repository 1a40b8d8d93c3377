"""
Unit tests for the record lifecycle and bulk operations.

Tests cover:
- Creation with defaults and ON_RECORD_CREATE auto-updates
- Temporary -> permanent with association re-keying
- Destroy and its side effects
- Duplication
- apply_list_of_changes operations
- Ratings and comments
- RecordFactory lookups and stale temporary records
"""

import pytest

from dcp.mdstore import (
    ChangeOp,
    FieldChange,
    IllegalTransitionError,
    InvalidValueError,
    RecordState,
    UnknownRecordError,
    User,
)
from dcp.mdstore.records.housekeeping import housekeeping_key


class TestCreate:
    """Tests for Record.create."""

    def test_new_records_are_temporary(self, store, alice):
        """Created records have negative ids until made permanent."""
        record = store.records.create(0, alice)
        assert record.id < 0
        assert record.state is RecordState.TEMPORARY
        assert store.records.exists(record.id)

    def test_defaults_applied(self, store, alice):
        """Field defaults are written to new records."""
        title = store.registry.add_field(0, "Text", "Title", default="Untitled")
        status = store.registry.add_field(0, "Option", "Status")
        draft = status.add_term("Draft")
        status.default_value = "Draft"

        record = store.records.create(0, alice)

        assert record.get(title) == "Untitled"
        assert record.get(status) == {draft: "Draft"}

    def test_on_create_auto_updates(self, store, alice):
        """User and Timestamp fields set on creation are filled in."""
        added_by = store.registry.add_field(0, "User", "Added By")
        added_by.set_attribute("update_method", "OnRecordCreate")
        added = store.registry.add_field(0, "Timestamp", "Date Added")
        added.set_attribute("update_method", "OnRecordCreate")

        record = store.records.create(0, alice)

        assert record.get(added_by) == {7: "alice"}
        assert record.get(added) is not None

    def test_anonymous_creator_leaves_user_field_empty(self, store):
        """The anonymous user is never written to User fields."""
        added_by = store.registry.add_field(0, "User", "Added By")
        added_by.set_attribute("update_method", "OnRecordCreate")

        record = store.records.create(0)

        assert record.get(added_by) == {}


class TestMakePermanent:
    """Tests for make_permanent."""

    def test_values_follow_the_record(self, store, alice):
        """Column values and associations move to the permanent id."""
        title = store.registry.add_field(0, "Text", "Title")
        keywords = store.registry.add_field(0, "ControlledName", "Keywords")
        alpha = keywords.add_term("Alpha")
        record = store.records.create(0, alice)
        record.set(title, "Tide")
        record.set(keywords, "Alpha")
        temp_id = record.id

        record.make_permanent()

        assert record.id > 0
        assert record.state is RecordState.PERMANENT
        assert not store.records.exists(temp_id)
        reloaded = store.records.load(record.id)
        assert reloaded.get(title) == "Tide"
        assert reloaded.get(keywords) == {alpha: "Alpha"}
        assert reloaded.field_last_modified(title)["modified_by"] == 7

    def test_queues_housekeeping(self, store, alice):
        """Becoming permanent queues one housekeeping unit."""
        record = store.records.create(0, alice)
        record.make_permanent()

        pending = store.queue.pending()
        assert [task["key"] for task in pending] == [housekeeping_key(record.id)]
        assert pending[0]["params"]["was_temporary"] is True

    def test_second_call_is_noop(self, store, alice):
        """Permanent records stay as they are."""
        record = store.records.create(0, alice)
        record.make_permanent()
        record_id = record.id
        record.make_permanent()
        assert record.id == record_id


class TestDestroy:
    """Tests for destroy."""

    def test_destroy_permanent_record(self, store, alice):
        """Destroying removes the record, its work item and its index entry."""
        title = store.registry.add_field(0, "Text", "Title")
        record = store.records.create(0, alice)
        record.make_permanent()
        record.set(title, "Tide")

        record.destroy()

        assert record.state is RecordState.DESTROYED
        assert not store.records.exists(record.id)
        assert record.id in store.indexer.removed
        assert store.queue.pending() == []
        with pytest.raises(IllegalTransitionError):
            record.set(title, "Again")

    def test_destroy_removes_associations(self, store, alice):
        """Term associations of the record are removed."""
        keywords = store.registry.add_field(0, "ControlledName", "Keywords")
        alpha = keywords.add_term("Alpha")
        record = store.records.create(0, alice)
        record.set(keywords, alpha)

        record.destroy()

        assert keywords.factory.records_with_term(alpha) == []

    def test_referrers_get_housekeeping(self, store, alice):
        """Records referencing a destroyed record are queued for housekeeping."""
        related = store.registry.add_field(0, "Reference", "Related")
        source = store.records.create(0, alice)
        source.make_permanent()
        target = store.records.create(0, alice)
        target.make_permanent()
        source.set(related, target)
        store.run_housekeeping()

        target.destroy()

        assert [task["key"] for task in store.queue.pending()] == [housekeeping_key(source.id)]
        assert store.records.load(source.id).get(related) == {}

    def test_load_destroyed_record_fails(self, store, alice):
        """A destroyed record can no longer be loaded."""
        record = store.records.create(0, alice)
        record.destroy()
        with pytest.raises(UnknownRecordError):
            store.records.load(record.id)


class TestDuplicate:
    """Tests for duplicate."""

    @pytest.fixture
    def original(self, store, alice):
        title = store.registry.add_field(0, "Text", "Title")
        store.registry.std_name_to_field_mapping(0, "Title", title)
        keywords = store.registry.add_field(0, "ControlledName", "Keywords")
        keywords.add_term("Alpha")
        notes = store.registry.add_field(0, "Paragraph", "Notes")
        notes.set_attribute("copy_on_resource_duplication", False)

        record = store.records.create(0, alice)
        record.set(title, "Tide")
        record.set(keywords, "Alpha")
        record.set(notes, "internal")
        record.make_permanent()
        return record

    def test_copy_is_marked_and_permanent(self, store, original):
        """The copy gets the duplicate marker and a permanent id."""
        copy = original.duplicate()

        assert copy.id > 0
        assert copy.id != original.id
        assert copy.get("Title") == "Tide [DUPLICATE]"
        assert copy.get("Keywords") == original.get("Keywords")

    def test_fields_not_copied_when_disabled(self, store, original):
        """copy_on_resource_duplication = False leaves the field empty."""
        copy = original.duplicate()
        assert copy.get("Notes") is None

    def test_without_marker(self, store, original, bob):
        """mark_as_duplicate=False keeps the title unchanged."""
        copy = store.records.duplicate(original.id, user=bob, mark_as_duplicate=False)
        assert copy.get("Title") == "Tide"


class TestApplyListOfChanges:
    """Tests for apply_list_of_changes."""

    @pytest.fixture
    def title(self, store):
        return store.registry.add_field(0, "Text", "Title", optional=False)

    @pytest.fixture
    def record(self, store, alice):
        return store.records.create(0, alice)

    def test_text_operations(self, record, title):
        """SET, APPEND, PREPEND and FIND_REPLACE edit text values."""
        assert record.apply_list_of_changes([FieldChange(title, ChangeOp.SET, "Foo")])
        record.apply_list_of_changes([FieldChange(title, ChangeOp.APPEND, "Bar")])
        assert record.get(title) == "Foo Bar"
        record.apply_list_of_changes([FieldChange(title, ChangeOp.PREPEND, "Pre")])
        assert record.get(title) == "Pre Foo Bar"
        record.apply_list_of_changes([FieldChange(title, ChangeOp.FIND_REPLACE, "Foo", "Baz")])
        assert record.get(title) == "Pre Baz Bar"

    def test_required_field_not_cleared(self, record, title):
        """CLEAR_ALL leaves required fields alone."""
        record.set(title, "Foo")
        assert not record.apply_list_of_changes([FieldChange(title, ChangeOp.CLEAR_ALL)])
        assert record.get(title) == "Foo"

    def test_username_substitution(self, record, title, alice):
        """X-USERNAME-X is replaced with the acting user's name."""
        record.apply_list_of_changes([FieldChange(title, ChangeOp.SET, "by X-USERNAME-X")], user=alice)
        assert record.get(title) == "by alice"

    def test_dict_form(self, record, title):
        """Changes may be given as mappings."""
        record.apply_list_of_changes([{"field": "Title", "op": 1, "value": "From dict"}])
        assert record.get(title) == "From dict"

    def test_uneditable_field_skipped(self, record, title, alice):
        """Fields the user cannot edit are skipped."""
        title.editable = False
        assert not record.apply_list_of_changes([FieldChange(title, ChangeOp.SET, "Foo")], user=alice)
        assert record.get(title) is None

    def test_vocabulary_operations(self, store, record):
        """Unknown terms are skipped; CLEAR removes one value."""
        keywords = store.registry.add_field(0, "ControlledName", "Keywords")
        keywords.add_term("Alpha")
        beta = keywords.add_term("Beta")
        record.set(keywords, ["Alpha", "Beta"])

        assert not record.apply_list_of_changes([FieldChange(keywords, ChangeOp.SET, "Nope")])
        assert record.apply_list_of_changes([FieldChange(keywords, ChangeOp.CLEAR, "Alpha")])
        assert record.get(keywords) == {beta: "Beta"}


class TestRatingsAndComments:
    """Tests for ratings and comments."""

    def test_cumulative_rating(self, store, alice, bob):
        """The cumulative rating is the mean of user ratings."""
        record = store.records.create(0, alice)
        assert record.scaled_cumulative_rating() is None

        record.rate(alice, 80)
        record.rate(bob, 40)

        assert record.cumulative_rating == 60
        assert record.scaled_cumulative_rating() == 3
        assert record.num_ratings() == 2
        assert record.rating(alice) == 80

    def test_rating_rules(self, store, alice):
        """Anonymous users and out-of-range ratings are rejected."""
        record = store.records.create(0, alice)
        with pytest.raises(InvalidValueError):
            record.rate(User.anonymous(), 50)
        with pytest.raises(InvalidValueError):
            record.rate(alice, 101)

    def test_comments_newest_first(self, store, alice, bob):
        """Comments are listed newest first."""
        record = store.records.create(0, alice)
        record.add_comment(alice, "First")
        record.add_comment(bob, "Second")

        assert [c["body"] for c in record.comments()] == ["Second", "First"]
        assert record.num_comments() == 2
        with pytest.raises(InvalidValueError):
            record.add_comment(alice, "   ")


class TestRecordFactory:
    """Tests for RecordFactory lookups."""

    def test_record_ids_and_count(self, store, alice):
        """Temporary records are listed only on request."""
        kept = store.records.create(0, alice)
        kept.make_permanent()
        store.records.create(0, alice)

        assert store.records.record_ids(0) == [kept.id]
        assert store.records.count(0, include_temporary=True) == 2
        assert not store.records.exists("abc")

    def test_stale_temporary_records_removed(self, store, alice):
        """Temporary records untouched for too long are removed on the next create."""
        stale = store.records.create(0, alice)
        store.db.execute(
            "UPDATE records SET date_last_modified = ?, created_at = ? WHERE record_id = ?",
            ("2000-01-01 00:00:00", "2000-01-01 00:00:00", stale.id),
        )

        fresh = store.records.create(0, alice)

        assert not store.records.exists(stale.id)
        assert fresh.id < stale.id

    def test_temporary_ids_not_reused(self, store, alice):
        """A deleted temporary record's id is never given to a later record."""
        first = store.records.create(0, alice)
        first_id = first.id
        first.destroy()

        second = store.records.create(0, alice)

        assert second.id < first_id
        assert not store.records.exists(first_id)
