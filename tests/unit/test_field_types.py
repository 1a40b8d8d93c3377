"""
Unit tests for field types and type-gated attributes.

Tests cover:
- Parsing type names and update methods
- Storage shapes and column layouts
- Attribute legality and defaults per type
- Multiplicity rules
"""

import pytest

from dcp.mdstore.schema.types import (
    FieldType,
    StorageShape,
    UpdateMethod,
    accepts_default_value,
    column_layout,
    default_attributes,
    legal_attributes,
)


class TestFieldTypeParsing:
    """Tests for FieldType.from_str."""

    @pytest.mark.parametrize(
        "value",
        ["ControlledName", "Controlled Name", "controlled_name", "MDFTYPE_CONTROLLEDNAME", 128, "128"],
    )
    def test_controlled_name_spellings(self, value):
        """Display names, constant names and numbers all parse."""
        assert FieldType.from_str(value) is FieldType.CONTROLLED_NAME

    def test_still_image_alias(self):
        """StillImage is accepted as Image."""
        assert FieldType.from_str("StillImage") is FieldType.IMAGE

    def test_unknown_type_raises(self):
        """Unknown names raise ValueError."""
        with pytest.raises(ValueError):
            FieldType.from_str("Hologram")

    def test_type_values_are_bit_flags(self):
        """Every type value is a distinct power of two."""
        values = [int(t) for t in FieldType]
        assert len(set(values)) == len(values)
        assert all(v & (v - 1) == 0 for v in values)


class TestUpdateMethod:
    """Tests for UpdateMethod.from_str."""

    def test_parse_value_and_name(self):
        """Both the stored value and the member name parse."""
        assert UpdateMethod.from_str("OnRecordRelease") is UpdateMethod.ON_RECORD_RELEASE
        assert UpdateMethod.from_str("on_record_change") is UpdateMethod.ON_RECORD_CHANGE

    def test_unknown_method_raises(self):
        """Unknown methods raise ValueError."""
        with pytest.raises(ValueError):
            UpdateMethod.from_str("Hourly")


class TestStorageLayout:
    """Tests for shapes and column layouts."""

    def test_text_like_types_share_a_shape(self):
        """Text, Paragraph, Url and Email are stored the same way."""
        shapes = {FieldType.from_str(t).shape for t in ("Text", "Paragraph", "Url", "Email")}
        assert shapes == {StorageShape.TEXT}

    def test_point_columns(self):
        """Points use X and Y REAL columns."""
        assert column_layout(FieldType.POINT, "Location") == {"LocationX": "REAL", "LocationY": "REAL"}

    def test_date_columns(self):
        """Dates use Begin, End and Precision columns."""
        assert column_layout(FieldType.DATE, "Created") == {
            "CreatedBegin": "DATE",
            "CreatedEnd": "DATE",
            "CreatedPrecision": "INTEGER",
        }

    def test_association_types_have_no_columns(self):
        """Vocabulary, user, reference and attachment types live in side tables."""
        for field_type in (FieldType.TREE, FieldType.USER, FieldType.REFERENCE, FieldType.FILE):
            assert column_layout(field_type, "Anything") == {}
            assert not field_type.shape.has_columns


class TestAttributes:
    """Tests for type-gated attributes."""

    def test_max_length_only_for_short_text(self):
        """max_length is legal for Text but not Number or Paragraph."""
        assert "max_length" in legal_attributes(FieldType.TEXT)
        assert "max_length" not in legal_attributes(FieldType.NUMBER)
        assert "max_length" not in legal_attributes(FieldType.PARAGRAPH)

    def test_common_attributes_legal_everywhere(self):
        """Search and duplication attributes apply to every type."""
        for field_type in FieldType:
            assert "copy_on_resource_duplication" in legal_attributes(field_type)

    def test_allow_multiple_defaults(self):
        """Trees and controlled names allow multiple values by default, options do not."""
        assert default_attributes(FieldType.TREE)["allow_multiple"] is True
        assert default_attributes(FieldType.CONTROLLED_NAME)["allow_multiple"] is True
        assert default_attributes(FieldType.OPTION)["allow_multiple"] is False
        assert "allow_multiple" not in default_attributes(FieldType.TEXT)

    def test_update_method_default(self):
        """Timestamp and User fields do not auto-update unless configured."""
        assert default_attributes(FieldType.TIMESTAMP)["update_method"] is UpdateMethod.NO_AUTO_UPDATE
        assert "update_method" not in default_attributes(FieldType.DATE)

    def test_multiplicity_rules(self):
        """Only ControlledName must allow multiple values."""
        assert FieldType.CONTROLLED_NAME.must_allow_multiple
        assert FieldType.OPTION.can_allow_multiple
        assert not FieldType.OPTION.must_allow_multiple
        assert not FieldType.TEXT.can_allow_multiple

    def test_default_value_support(self):
        """Dates, users and attachments take no default value."""
        assert accepts_default_value(FieldType.TEXT)
        assert accepts_default_value(FieldType.TREE)
        assert not accepts_default_value(FieldType.DATE)
        assert not accepts_default_value(FieldType.USER)
        assert not accepts_default_value(FieldType.IMAGE)
