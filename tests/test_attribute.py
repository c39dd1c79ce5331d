from taskconsole.attribute import AttributeUpdate, Attributes, UpdateOp
from taskconsole.proto import U64_MAX, Field, FieldValue


def _update(value, op=None, name="count", unit=None):
    return AttributeUpdate(field=Field(name=name, value=value), op=op, unit=unit)


def _single(attrs):
    values = list(attrs.values())
    assert len(values) == 1
    return values[0]


def test_first_update_inserts_attribute_with_unit():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_u64(5), UpdateOp.OVERRIDE, unit="ms"))
    attr = _single(attrs)
    assert attr.field.value == FieldValue.from_u64(5)
    assert attr.unit == "ms"


def test_add_accumulates():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_u64(5), UpdateOp.OVERRIDE))
    attrs.update(1, _update(FieldValue.from_u64(3), UpdateOp.ADD))
    assert _single(attrs).field.value == FieldValue.from_u64(8)


def test_sub_saturates_at_zero():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_u64(2), UpdateOp.OVERRIDE))
    attrs.update(1, _update(FieldValue.from_u64(5), UpdateOp.SUB))
    assert _single(attrs).field.value == FieldValue.from_u64(0)


def test_add_saturates_at_max():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_u64(U64_MAX), UpdateOp.OVERRIDE))
    attrs.update(1, _update(FieldValue.from_u64(10), UpdateOp.ADD))
    assert _single(attrs).field.value == FieldValue.from_u64(U64_MAX)


def test_i64_sub_saturates_at_min():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_i64(-(2**63)), UpdateOp.OVERRIDE))
    attrs.update(1, _update(FieldValue.from_i64(1), UpdateOp.SUB))
    assert _single(attrs).field.value == FieldValue.from_i64(-(2**63))


def test_override_replaces_value():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_i64(4), UpdateOp.OVERRIDE))
    attrs.update(1, _update(FieldValue.from_i64(9), UpdateOp.OVERRIDE))
    assert _single(attrs).field.value == FieldValue.from_i64(9)


def test_numeric_update_without_op_is_ignored():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_u64(4), UpdateOp.OVERRIDE))
    attrs.update(1, _update(FieldValue.from_u64(9)))
    assert _single(attrs).field.value == FieldValue.from_u64(4)


def test_bool_update_replaces_without_op():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_bool(False)))
    attrs.update(1, _update(FieldValue.from_bool(True)))
    assert _single(attrs).field.value == FieldValue.from_bool(True)


def test_mismatched_kinds_leave_value_unchanged():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_str("a")))
    attrs.update(1, _update(FieldValue.from_u64(1), UpdateOp.ADD))
    assert _single(attrs).field.value == FieldValue.from_str("a")


def test_missing_name_is_skipped():
    attrs = Attributes()
    attrs.update(1, AttributeUpdate(field=Field(value=FieldValue.from_u64(1))))
    assert list(attrs.values()) == []


def test_distinct_ids_are_distinct_keys():
    attrs = Attributes()
    attrs.update(1, _update(FieldValue.from_u64(1), UpdateOp.OVERRIDE))
    attrs.update(2, _update(FieldValue.from_u64(1), UpdateOp.OVERRIDE))
    assert len(list(attrs.values())) == 2


def test_stored_attribute_is_independent_of_update():
    attrs = Attributes()
    update = _update(FieldValue.from_u64(1), UpdateOp.OVERRIDE)
    attrs.update(1, update)
    attrs.update(1, _update(FieldValue.from_u64(2), UpdateOp.ADD))
    assert update.field.value == FieldValue.from_u64(1)