"""
Integration tests for MetadataStore built from settings.

Tests cover:
- Required text field in a new schema, with no-op writes staying silent
- Mapped tree fields that must be unmapped before they can be dropped
- Vocabulary conversion round trip with per-record associations
- Permission cache sharing against per-user evaluation
- Values, fields and queued housekeeping surviving a reopen
"""

import pytest

from dcp.mdstore import (
    InMemoryUserDirectory,
    MappedFieldError,
    MetadataStore,
    PrivilegeSet,
    StoreSettings,
    User,
    field_scope,
)

ALICE = User(user_id=7, name="alice", privileges=frozenset({3}))
BOB = User(user_id=8, name="bob", privileges=frozenset({3}))


@pytest.fixture
def settings(tmp_path):
    return StoreSettings(data_dir=str(tmp_path), wal_mode=True, housekeeping_max_attempts=3)


def _open(settings):
    store = MetadataStore.from_settings(settings, users=InMemoryUserDirectory([ALICE, BOB]))
    store.initialize()
    return store


@pytest.fixture
def store(settings):
    with _open(settings) as md:
        yield md


class TestRequiredTitle:
    """A required Text field in a new schema."""

    def test_set_get_and_silent_repeat(self, store):
        """Writing the current value again publishes nothing."""
        schema = store.registry.create_schema("S")
        title = store.registry.add_field(schema.schema_id, "Text", "Title", optional=False)
        assert title.storage_name == "Title1"

        record = store.records.create(schema.schema_id, ALICE)
        seen = []
        store.events.subscribe(field_scope(title.id), seen.append)

        assert record.set("Title", "Foo")
        assert record.get("Title") == "Foo"
        stamp = record.field_last_modified(title)

        assert not record.set("Title", "Foo")
        assert len(seen) == 1
        assert record.field_last_modified(title) == stamp


class TestMappedTree:
    """A tree field mapped as a standard name."""

    def test_unmap_then_drop(self, store):
        """Dropping needs the mapping removed and cascades to terms."""
        topic = store.registry.add_field(0, "Tree", "Topic")
        store.registry.std_name_to_field_mapping(0, "Subject", topic)
        topic.add_term("Science -- Physics")
        record = store.records.create(0, ALICE)
        record.set(topic, "Science -- Physics")
        record.make_permanent()
        field_id = topic.id

        with pytest.raises(MappedFieldError):
            store.registry.drop_field("Topic")

        store.registry.std_name_to_field_mapping(0, "Subject", None)
        store.registry.drop_field("Topic")

        assert not store.registry.field_exists(field_id)
        assert store.db.query_value("SELECT COUNT(*) FROM classifications WHERE field_id = ?", (field_id,)) == 0
        assert store.db.query_value("SELECT COUNT(*) FROM record_class_ints") == 0


class TestConversionRoundTrip:
    """ControlledName -> Tree -> ControlledName."""

    def test_terms_and_associations_survive(self, store):
        """Term text and per-record associations are preserved."""
        topic = store.registry.add_field(0, "ControlledName", "Topic")
        topic.add_term("Alpha")
        topic.add_term("Beta")
        both = store.records.create(0, ALICE)
        both.set(topic, ["Alpha", "Beta"])
        both.make_permanent()
        one = store.records.create(0, ALICE)
        one.set(topic, "Beta")
        one.make_permanent()

        topic.convert_type("Tree")
        topic.convert_type("ControlledName")

        assert sorted(store.records.load(both.id).get(topic).values()) == ["Alpha", "Beta"]
        assert list(store.records.load(one.id).get(topic).values()) == ["Beta"]
        assert {both.id, one.id} <= store.indexer.pending


class TestPermissionCache:
    """Shared class results against per-user evaluation."""

    def test_identical_flags_share_results(self, store):
        """Users with the same relevant flags share one cache entry."""
        store.registry.set_schema_privileges(0, "viewing", PrivilegeSet("OR", privileges=[3]))
        record = store.records.create(0, ALICE)
        record.make_permanent()

        assert store.evaluator.filter_viewable(ALICE, [record.id]) == [record.id]
        assert store.evaluator.filter_viewable(BOB, [record.id]) == [record.id]
        assert store.db.query_value("SELECT COUNT(*) FROM user_perms_cache") == 1

    def test_owner_rule_evaluated_per_user(self, store):
        """An owner comparison gives each user their own answer."""
        owner = store.registry.add_field(0, "User", "Owner")
        rules = PrivilegeSet("OR", privileges=[42])
        rules.add_condition(owner.id, "==", PrivilegeSet.CURRENT_USER)
        store.registry.set_schema_privileges(0, "viewing", rules)
        record = store.records.create(0, ALICE)
        record.set(owner, ALICE)
        record.make_permanent()

        assert store.evaluator.filter_viewable(ALICE, [record.id]) == [record.id]
        assert store.evaluator.filter_viewable(BOB, [record.id]) == []
        assert store.evaluator.filter_viewable(ALICE, [record.id]) == [record.id]


class TestReopen:
    """State kept in the database file."""

    def test_state_survives_reopen(self, settings):
        """Fields, values and pending housekeeping are read back."""
        with _open(settings) as first:
            title = first.registry.add_field(0, "Text", "Title")
            title.set_attribute("max_length", 120)
            record = first.records.create(0, ALICE)
            record.set(title, "Tide")
            record.make_permanent()
            record_id = record.id

        with _open(settings) as second:
            title = second.registry.get_field("Title")
            assert title.get_attribute("max_length") == 120
            assert second.records.load(record_id).get(title) == "Tide"
            assert second.queue.pending_count() == 1
            assert second.run_housekeeping() == 1
            assert record_id in second.indexer.pending
