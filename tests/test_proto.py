import pytest

from taskconsole.proto import (
    Field,
    FieldValue,
    Location,
    Metadata,
    MetadataKind,
    Update,
    ValueKind,
    meta_id,
    new_metadata,
)


def test_bool_value_displays_lowercase():
    assert str(FieldValue.from_bool(True)) == "true"
    assert str(FieldValue.from_bool(False)) == "false"


def test_numeric_values_display_as_numbers():
    assert str(FieldValue.from_u64(42)) == str(42)
    assert str(FieldValue.from_i64(-7)) == str(-7)


def test_debug_value_uses_repr():
    value = FieldValue.from_debug([1, 2])
    assert value.kind is ValueKind.DEBUG
    assert value.value == "[1, 2]"


def test_u64_out_of_range_rejected():
    with pytest.raises(ValueError):
        FieldValue.from_u64(-1)
    with pytest.raises(ValueError):
        FieldValue.from_u64(2**64)


def test_i64_out_of_range_rejected():
    with pytest.raises(ValueError):
        FieldValue.from_i64(2**63)


def test_field_display_with_string_name():
    field = Field(name="x", value=FieldValue.from_str("y"))
    assert str(field) == "x=y"


def test_field_display_with_index_name_is_empty():
    field = Field(name=3, value=FieldValue.from_str("y"))
    assert str(field) == ""


def test_location_unknown():
    assert str(Location()) == "<unknown location>"


def test_location_module_path_takes_precedence():
    loc = Location(file="file.rs", module_path="module", line=3)
    assert str(loc).startswith("module")
    assert "file.rs" not in str(loc)


def test_location_column_needs_line():
    assert str(Location(file="file.rs", column=4)) == "file.rs"


def test_metadata_kind_predicates():
    span = Metadata(name="runtime.spawn", target="tokio::task")
    event = Metadata(name="ev", target="t", kind=MetadataKind.EVENT)
    assert span.is_span() and not span.is_event()
    assert event.is_event() and not event.is_span()


def test_meta_id_is_identity_based():
    a = Metadata(name="same", target="t")
    b = Metadata(name="same", target="t")
    assert meta_id(a) == meta_id(a)
    assert meta_id(a) != meta_id(b)


def test_new_metadata_wraps_metadata():
    meta = Metadata(name="n", target="t")
    registered = new_metadata(meta)
    assert registered.metadata is meta
    assert registered.id == meta_id(meta)


def test_update_defaults_are_empty():
    update = Update()
    assert update.task_update is None
    assert update.new_metadata is None