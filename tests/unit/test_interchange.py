"""
Unit tests for field interchange documents.

Tests cover:
- Importing fields with attributes, vocabularies, standard names and
  privileges
- Validation that reports every problem at once
- All-or-nothing import, restoring earlier standard name mappings
- Export and re-import into another schema
"""

import textwrap

import pytest
import yaml

from dcp.mdstore import FieldType, InterchangeError, PrivilegeSet
from dcp.mdstore.schema.field import FieldDescriptor

DOCUMENT = textwrap.dedent("""\
    fields:
      - name: Title
        type: Text
        optional: false
        max_length: 200
      - name: Release Flag
        type: Flag
      - name: Topic
        type: Tree
        vocabulary_file: topics.txt
        viewing_privileges:
          logic: AND
          conditions:
            - {field: Release Flag, operator: "==", value: 1}
    standard_names:
      Title: Title
    privileges:
      viewing: {logic: OR, privileges: [3]}
""")


@pytest.fixture
def document_path(tmp_path):
    (tmp_path / "topics.txt").write_text("Science -- Physics\nArts\n", encoding="utf-8")
    path = tmp_path / "fields.yaml"
    path.write_text(DOCUMENT, encoding="utf-8")
    return path


class TestImport:
    """Tests for add_fields_from_interchange_*."""

    def test_import_file(self, store, document_path):
        """Fields, vocabularies, mappings and privileges are created."""
        created = store.registry.add_fields_from_interchange_file(document_path)

        assert [f.name for f in created] == ["Title", "Release Flag", "Topic"]
        title, release, topic = created
        assert not title.optional
        assert title.get_attribute("max_length") == 200
        assert release.type is FieldType.FLAG
        assert sorted(topic.terms().values()) == ["Arts", "Science", "Science -- Physics"]
        assert store.registry.field_by_standard_name(0, "Title") is title
        assert topic.viewing_privileges.conditions[0].field_id == release.id
        assert store.registry.get_schema(0).viewing_privileges == PrivilegeSet("OR", privileges=[3])

    def test_import_list_form(self, store):
        """A bare list of fields is accepted."""
        created = store.registry.add_fields_from_interchange_document("- {name: Notes, type: Paragraph}\n")
        assert created[0].type is FieldType.PARAGRAPH

    def test_document_names_schema(self, store):
        """A schema named in the document wins over the argument."""
        store.registry.create_schema("Collections")
        created = store.registry.add_fields_from_interchange_document(
            "schema: Collections\nfields:\n  - {name: Title, type: Text}\n"
        )
        assert created[0].schema_id == 1

    def test_unknown_schema(self, store):
        """Unknown target schemas are reported as interchange errors."""
        with pytest.raises(InterchangeError):
            store.registry.add_fields_from_interchange_document("schema: Nowhere\nfields: []\n")


class TestValidation:
    """Tests for document validation."""

    def test_all_problems_reported(self, store):
        """Every malformed entry is listed in one error."""
        document = textwrap.dedent("""\
            fields:
              - name: A
              - type: Text
              - {name: B, type: Hologram}
            privileges:
              bogus: {}
        """)
        with pytest.raises(InterchangeError) as exc_info:
            store.registry.add_fields_from_interchange_document(document)

        assert len(exc_info.value.errors) == 4
        assert store.registry.get_fields(0) == []

    def test_invalid_yaml(self, store):
        """Unparseable documents are rejected."""
        with pytest.raises(InterchangeError):
            store.registry.add_fields_from_interchange_document("fields: [\n")

    def test_duplicate_names(self, store):
        """A name listed twice is an error."""
        document = "- {name: Title, type: Text}\n- {name: title, type: Text}\n"
        with pytest.raises(InterchangeError) as exc_info:
            store.registry.add_fields_from_interchange_document(document)
        assert exc_info.value.errors == ["Field 'title': listed more than once"]

    def test_condition_without_field(self, store):
        """Conditions must name a field; nothing is created otherwise."""
        document = textwrap.dedent("""\
            - {name: Title, type: Text}
            - name: Subtitle
              type: Text
              viewing_privileges:
                conditions:
                  - {operator: "==", value: 1}
        """)
        with pytest.raises(InterchangeError) as exc_info:
            store.registry.add_fields_from_interchange_document(document)

        assert exc_info.value.errors == ["Field 'Subtitle' viewing_privileges: condition 0 names no field"]
        assert store.registry.get_fields(0) == []

    def test_privilege_section_must_be_mapping(self, store):
        """A privilege level given as a list is reported before any write."""
        document = "fields:\n  - {name: Title, type: Text}\nprivileges:\n  viewing: [3]\n"
        with pytest.raises(InterchangeError) as exc_info:
            store.registry.add_fields_from_interchange_document(document)

        assert exc_info.value.errors == ["viewing privileges: must be a mapping"]
        assert not store.registry.field_exists("Title")


class TestRollback:
    """Tests for all-or-nothing import."""

    def test_bad_attribute_rolls_back(self, store):
        """A field that cannot be configured undoes earlier fields."""
        document = textwrap.dedent("""\
            - {name: Title, type: Text}
            - {name: Pages, type: Number, max_length: 5}
        """)
        with pytest.raises(InterchangeError) as exc_info:
            store.registry.add_fields_from_interchange_document(document)

        assert len(exc_info.value.errors) == 1
        assert not store.registry.field_exists("Title")
        assert not store.registry.field_exists("Pages")
        assert "Title" not in store.db.column_types()

    def test_bad_privileges_roll_back_mappings(self, store):
        """A failure after mapping standard names removes the mappings."""
        document = textwrap.dedent("""\
            fields:
              - {name: Title, type: Text}
            standard_names:
              Title: Title
            privileges:
              viewing:
                conditions:
                  - {field: Nope, operator: "==", value: 1}
        """)
        with pytest.raises(InterchangeError):
            store.registry.add_fields_from_interchange_document(document)

        assert store.registry.field_by_standard_name(0, "Title") is None
        assert not store.registry.field_exists("Title")
        assert store.registry.get_schema(0).viewing_privileges.is_empty

    def test_earlier_mapping_restored(self, store):
        """A standard name remapped by a failed import points where it did before."""
        heading = store.registry.add_field(0, "Text", "Heading")
        store.registry.std_name_to_field_mapping(0, "Title", heading)
        document = textwrap.dedent("""\
            fields:
              - {name: Headline, type: Text}
            standard_names:
              Title: Headline
            privileges:
              viewing:
                conditions:
                  - {field: Nope, operator: "==", value: 1}
        """)
        with pytest.raises(InterchangeError):
            store.registry.add_fields_from_interchange_document(document)

        assert store.registry.std_name_to_field_mapping(0, "Title") == heading.id
        assert not store.registry.field_exists("Headline")

    def test_unexpected_failure_rolls_back(self, store, monkeypatch):
        """Failures outside the store's own errors still undo the import."""
        def fail(self, level, privset):
            raise RuntimeError("write failed")

        monkeypatch.setattr(FieldDescriptor, "set_privileges", fail)
        document = textwrap.dedent("""\
            - {name: Title, type: Text}
            - name: Subtitle
              type: Text
              viewing_privileges: {privileges: [3]}
        """)
        with pytest.raises(InterchangeError) as exc_info:
            store.registry.add_fields_from_interchange_document(document)

        assert exc_info.value.errors == ["write failed"]
        assert not store.registry.field_exists("Title")
        assert not store.registry.field_exists("Subtitle")


class TestExport:
    """Tests for export_fields."""

    def test_round_trip_into_another_schema(self, store, document_path):
        """An export imports cleanly into an empty schema."""
        store.registry.add_fields_from_interchange_file(document_path)
        exported = yaml.safe_load(store.export_fields(0))
        assert exported["schema"] == "Resources"
        assert exported["standard_names"] == {"Title": "Title"}

        copy = store.registry.create_schema("Copy")
        exported["schema"] = "Copy"
        created = store.registry.add_fields_from_interchange_document(yaml.dump(exported))

        names = {f.name: f for f in created}
        assert set(names) == {"Title", "Release Flag", "Topic"}
        assert all(f.schema_id == copy.schema_id for f in created)
        assert names["Title"].get_attribute("max_length") == 200
        condition = names["Topic"].viewing_privileges.conditions[0]
        assert condition.field_id == names["Release Flag"].id
        assert store.registry.field_by_standard_name(copy.schema_id, "Title") is names["Title"]
        assert store.registry.get_schema(copy.schema_id).viewing_privileges.privilege_flags_checked() == {3}
