"""
Unit tests for the schema registry.

Tests cover:
- Default schema and schema creation
- Field creation, naming rules and storage-name collisions
- Temporary fields made permanent: re-keyed rows and column conflicts
- Field lookup by id, name and "Schema: Name"
- Field listings, ordering and type filters
- Standard-name mappings
"""

import pytest

from dcp.mdstore import (
    CrossSchemaError,
    DuplicateNameError,
    FieldOrder,
    FieldType,
    IllegalNameError,
    InvalidTypeError,
    InvalidValueError,
    MappedFieldError,
    SchemaConflictError,
    UnknownFieldError,
    UnknownSchemaError,
)


class TestSchemas:
    """Tests for schema management."""

    def test_default_schema_exists(self, store):
        """Schema 0 is created by initialize()."""
        schema = store.registry.get_schema(0)
        assert schema.name == "Resources"
        assert store.registry.get_schema("resources").schema_id == 0

    def test_create_schema(self, store):
        """New schemas get the next id."""
        schema = store.registry.create_schema("Collections", item_name="Collection")
        assert schema.schema_id == 1
        assert schema.item_name == "Collection"
        assert [s.name for s in store.registry.schemas()] == ["Resources", "Collections"]

    def test_duplicate_schema_name(self, store):
        """Schema names are unique, case-insensitively."""
        store.registry.create_schema("Collections")
        with pytest.raises(DuplicateNameError):
            store.registry.create_schema("collections")

    def test_unknown_schema(self, store):
        """Unknown schemas raise UnknownSchemaError."""
        with pytest.raises(UnknownSchemaError):
            store.registry.get_schema(42)
        assert not store.registry.schema_exists("Nope")


class TestFieldCreation:
    """Tests for creating fields."""

    def test_add_field_is_permanent(self, store):
        """add_field() returns a permanent field with storage."""
        title = store.registry.add_field(0, "Text", "Title", optional=False)
        assert title.id > 0
        assert not title.is_temporary
        assert title.type is FieldType.TEXT
        assert not title.optional
        assert "Title" in store.db.column_types()

    def test_create_field_is_temporary(self, store):
        """create_field() returns a temporary field without storage."""
        draft = store.registry.create_field(0, "Number", "Page Count")
        assert draft.id < 0
        assert "PageCount" not in store.db.column_types()
        assert draft not in store.registry.get_fields(0)
        assert draft in store.registry.get_fields(0, include_temporary=True)

    def test_make_permanent_rekeys_mappings(self, store):
        """Standard names mapped to a temporary field follow it to its permanent id."""
        draft = store.registry.create_field(0, "Text", "Headline")
        store.registry.std_name_to_field_mapping(0, "Title", draft)

        draft.make_permanent()

        assert draft.id > 0
        assert store.registry.std_name_to_field_mapping(0, "Title") == draft.id
        assert store.registry.standard_names_for_field(draft.id) == ["Title"]

    def test_make_permanent_column_conflict(self, store):
        """An existing column of another type blocks the field from becoming permanent."""
        store.db.execute('ALTER TABLE records ADD COLUMN "Pages" TEXT')
        draft = store.registry.create_field(0, "Number", "Pages")

        with pytest.raises(SchemaConflictError) as exc_info:
            draft.make_permanent()

        assert exc_info.value.column == "Pages"
        assert draft.is_temporary
        assert store.registry.field_exists(draft.id)
        assert store.db.column_types()["Pages"] == "TEXT"

    def test_storage_name_off_default_schema(self, store):
        """Fields outside schema 0 get the schema id in their storage name."""
        schema = store.registry.create_schema("Collections")
        title = store.registry.add_field(schema.schema_id, "Text", "Title")
        assert title.storage_name == "Title1"

    def test_duplicate_name_in_schema(self, store):
        """Two fields of one schema cannot share a name."""
        store.registry.add_field(0, "Text", "Title")
        with pytest.raises(DuplicateNameError):
            store.registry.add_field(0, "Paragraph", "title")

    def test_storage_name_collision(self, store):
        """Names that map to the same storage name collide."""
        store.registry.add_field(0, "Text", "Date Of Release")
        with pytest.raises(DuplicateNameError):
            store.registry.add_field(0, "Text", "DateOfRelease")

    def test_derived_column_collision(self, store):
        """A name clashing with another field's derived columns is rejected."""
        store.registry.add_field(0, "Date", "Captured")
        with pytest.raises(DuplicateNameError):
            store.registry.add_field(0, "Text", "Captured Begin")

    @pytest.mark.parametrize("name", ["Title!", "", "   ", "Title--Alt"])
    def test_illegal_names(self, store, name):
        """Only letters, digits, spaces and parentheses are allowed."""
        with pytest.raises(IllegalNameError):
            store.registry.add_field(0, "Text", name)

    def test_reserved_names(self, store):
        """Names normalizing to reserved identifiers are rejected."""
        with pytest.raises(IllegalNameError):
            store.registry.add_field(0, "Number", "Record Id")

    def test_unknown_type(self, store):
        """Unknown types raise InvalidTypeError."""
        with pytest.raises(InvalidTypeError):
            store.registry.add_field(0, "Hologram", "Thing")


class TestFieldLookup:
    """Tests for get_field()."""

    def test_lookup_forms(self, store):
        """Fields resolve by object, id, digit string, name and qualified name."""
        title = store.registry.add_field(0, "Text", "Title")
        registry = store.registry
        assert registry.get_field(title) is title
        assert registry.get_field(title.id) is title
        assert registry.get_field(str(title.id)) is title
        assert registry.get_field("title") is title
        assert registry.get_field("Resources: Title") is title

    def test_names_resolve_in_given_schema(self, store):
        """Bare names are looked up in the schema passed."""
        schema = store.registry.create_schema("Collections")
        store.registry.add_field(0, "Text", "Title")
        other = store.registry.add_field(schema.schema_id, "Text", "Title")
        assert store.registry.get_field("Title", schema.schema_id) is other
        assert store.registry.get_field("Collections: Title") is other

    def test_cross_schema(self, store):
        """A field from another schema raises CrossSchemaError."""
        schema = store.registry.create_schema("Collections")
        title = store.registry.add_field(0, "Text", "Title")
        with pytest.raises(CrossSchemaError):
            store.registry.get_field(title.id, schema.schema_id)
        assert not store.registry.field_exists(title.id, schema.schema_id)

    def test_unknown_field(self, store):
        """Unknown ids and names raise UnknownFieldError."""
        with pytest.raises(UnknownFieldError):
            store.registry.get_field(999)
        with pytest.raises(UnknownFieldError):
            store.registry.get_field("Missing")
        with pytest.raises(UnknownFieldError):
            store.registry.get_field("Nowhere: Title")


class TestFieldListings:
    """Tests for get_fields() and field orders."""

    @pytest.fixture
    def fields(self, store):
        registry = store.registry
        return [
            registry.add_field(0, "Text", "Title"),
            registry.add_field(0, "Tree", "Subject"),
            registry.add_field(0, "Number", "Pages"),
            registry.add_field(0, "ControlledName", "Author"),
        ]

    def test_creation_order(self, store, fields):
        """Fields are listed in creation order by default."""
        assert [f.name for f in store.registry.get_fields(0)] == ["Title", "Subject", "Pages", "Author"]

    def test_alphabetical_order(self, store, fields):
        """Alphabetical order sorts by display name."""
        fields[2].label = "Extent"
        names = [f.display_name for f in store.registry.get_fields(0, order_by=FieldOrder.ALPHABETICAL)]
        assert names == ["Author", "Extent", "Subject", "Title"]

    def test_display_order_moves(self, store, fields):
        """Moving a field in the display order changes listings."""
        store.registry.move_field_in_order(0, FieldOrder.DISPLAY, "Author", 0)
        names = [f.name for f in store.registry.get_fields(0, order_by=FieldOrder.DISPLAY)]
        assert names == ["Author", "Title", "Subject", "Pages"]
        editing = [f.name for f in store.registry.get_fields(0, order_by=FieldOrder.EDITING)]
        assert editing == ["Title", "Subject", "Pages", "Author"]

    def test_only_maintained_orders_move(self, store, fields):
        """Alphabetical and creation orders cannot be rearranged."""
        with pytest.raises(InvalidValueError):
            store.registry.move_field_in_order(0, FieldOrder.ALPHABETICAL, "Author", 0)

    def test_type_filter(self, store, fields):
        """Type filters accept a type, several types or a mask."""
        registry = store.registry
        assert [f.name for f in registry.get_fields(0, type_filter=FieldType.TREE)] == ["Subject"]
        vocab = registry.get_fields(0, type_filter=(FieldType.TREE, FieldType.CONTROLLED_NAME))
        assert [f.name for f in vocab] == ["Subject", "Author"]
        mask = int(FieldType.TEXT) | int(FieldType.NUMBER)
        assert [f.name for f in registry.get_fields(0, type_filter=mask)] == ["Title", "Pages"]

    def test_disabled_fields_hidden(self, store, fields):
        """Disabled fields are listed only on request."""
        fields[0].enabled = False
        assert "Title" not in [f.name for f in store.registry.get_fields(0)]
        assert "Title" in [f.name for f in store.registry.get_fields(0, include_disabled=True)]

    def test_listing_sees_new_fields(self, store, fields):
        """Listings are refreshed after fields are added or dropped."""
        assert len(store.registry.get_fields(0)) == 4
        store.registry.add_field(0, "Flag", "Featured")
        assert len(store.registry.get_fields(0)) == 5
        store.registry.drop_field("Featured")
        assert len(store.registry.get_fields(0)) == 4


class TestStandardNames:
    """Tests for standard-name mappings."""

    def test_map_read_and_clear(self, store):
        """Mappings can be set, read and cleared."""
        title = store.registry.add_field(0, "Text", "Title")
        registry = store.registry
        assert registry.std_name_to_field_mapping(0, "Title") is None
        assert registry.std_name_to_field_mapping(0, "Title", title.id) == title.id
        assert registry.field_by_standard_name(0, "Title") is title
        assert registry.standard_names_for_field(title.id) == ["Title"]
        assert registry.std_name_to_field_mapping(0, "Title", None) is None

    def test_map_across_schemas_fails(self, store):
        """A standard name cannot map to another schema's field."""
        schema = store.registry.create_schema("Collections")
        title = store.registry.add_field(0, "Text", "Title")
        with pytest.raises(CrossSchemaError):
            store.registry.std_name_to_field_mapping(schema.schema_id, "Title", title.id)

    def test_mapped_field_cannot_be_dropped(self, store):
        """Dropping a mapped field raises MappedFieldError."""
        title = store.registry.add_field(0, "Text", "Title")
        store.registry.std_name_to_field_mapping(0, "Title", title)
        with pytest.raises(MappedFieldError) as exc_info:
            title.drop()
        assert exc_info.value.standard_names == ["Title"]
        assert store.registry.field_exists("Title")
