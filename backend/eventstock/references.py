"""
Tagged record references.

A reference to another record is either Unresolved(id) or Resolved(record).
Call sites never guess which one they hold from the shape of a field; a
reference becomes a record only through resolve(), which performs the load.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from .extensions import db
from .validation import NotFoundError

T = TypeVar("T")


@dataclass(frozen=True)
class Unresolved(Generic[T]):
    id: int


@dataclass(frozen=True)
class Resolved(Generic[T]):
    record: T

    @property
    def id(self) -> int:
        return self.record.id


Ref = Union[Unresolved[T], Resolved[T]]


def ref_to(record_id: int | None) -> Unresolved | None:
    if record_id is None:
        return None
    return Unresolved(record_id)


def resolve(ref: Ref | None, model) -> Resolved | None:
    """Load the referenced row. Resolved refs pass through untouched."""
    if ref is None:
        return None
    if isinstance(ref, Resolved):
        return ref
    record = db.session.get(model, ref.id)
    if record is None:
        raise NotFoundError(f"{model.__name__} {ref.id} not found")
    return Resolved(record)


def ref_to_dict(ref: Ref | None) -> dict[str, Any] | None:
    if ref is None:
        return None
    if isinstance(ref, Resolved):
        return ref.record.to_dict()
    return {"id": ref.id}
