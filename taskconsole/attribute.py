"""Attributes of resources and async operations, updated by state-update events."""

from __future__ import annotations

import dataclasses
import enum
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from taskconsole.proto import (
    I64_MAX,
    I64_MIN,
    U64_MAX,
    Attribute,
    Field,
    FieldValue,
    ValueKind,
)

logger = logging.getLogger(__name__)

_BOUNDS = {ValueKind.U64: (0, U64_MAX), ValueKind.I64: (I64_MIN, I64_MAX)}


class UpdateOp(enum.Enum):
    """How a numeric update combines with the current value."""

    ADD = "add"
    OVERRIDE = "override"
    SUB = "sub"


@dataclass
class AttributeUpdate:
    """A single update to an attribute."""

    field: Field
    op: Optional[UpdateOp] = None
    unit: Optional[str] = None

    def to_attribute(self) -> Attribute:
        return Attribute(field=dataclasses.replace(self.field), unit=self.unit)


class Attributes:
    """Attributes keyed by the updating span's id and the field name."""

    def __init__(self) -> None:
        self._attributes: dict = {}

    def values(self) -> Iterator[Attribute]:
        return iter(self._attributes.values())

    def __len__(self) -> int:
        return len(self._attributes)

    def update(self, id: int, update: AttributeUpdate) -> None:
        name = update.field.name
        if name is None:
            logger.warning("field missing name, skipping: %r", update.field)
            return
        key = (id, name)
        existing = self._attributes.get(key)
        if existing is None:
            self._attributes[key] = update.to_attribute()
        else:
            _apply(existing, update)


def _apply(attribute: Attribute, update: AttributeUpdate) -> None:
    current = attribute.field.value if attribute.field is not None else None
    incoming = update.field.value
    if current is None or incoming is None or current.kind is not incoming.kind:
        logger.warning("attribute %r cannot be updated by update %r", current, incoming)
        return

    if current.kind not in _BOUNDS:
        attribute.field.value = incoming
        return

    if update.op is None:
        logger.warning(
            "numeric attribute update %r needs to have an op field", update.field.name
        )
        return

    if update.op is UpdateOp.OVERRIDE:
        attribute.field.value = incoming
        return

    low, high = _BOUNDS[current.kind]
    if update.op is UpdateOp.ADD:
        result = current.value + incoming.value
    else:
        result = current.value - incoming.value
    attribute.field.value = FieldValue(current.kind, min(max(result, low), high))