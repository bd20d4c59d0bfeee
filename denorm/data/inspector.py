"""
Schema and instance-state access for SQLAlchemy mapped records.

The denormalization engine never touches the mapper directly; it asks this
inspector which attributes a record type maps, which associations it has,
and what changed on an instance since it was last flushed.
"""
from __future__ import annotations

from typing import Any, Dict, FrozenSet, Optional, Protocol, Tuple

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm.exc import UnmappedColumnError
from sqlalchemy.orm.interfaces import MANYTOONE


def attribute_key(name: Any) -> str:
    """Normalize an attribute reference (string or instrumented attribute) to its key."""
    if isinstance(name, str):
        return name
    key = getattr(name, "key", None)
    if isinstance(key, str):
        return key
    return str(name)


class RecordInspector(Protocol):
    """Capabilities the engine needs from the record-mapping layer."""

    def field_names(self, record_type: type) -> FrozenSet[str]: ...

    def single_association_names(self, record_type: type) -> FrozenSet[str]: ...

    def collection_association_names(self, record_type: type) -> FrozenSet[str]: ...

    def many_to_one_foreign_keys(self, record_type: type) -> Dict[str, Tuple[str, ...]]: ...

    def changed_field_names(self, instance: Any) -> FrozenSet[str]: ...

    def has_changed(self, instance: Any) -> bool: ...

    def is_new(self, instance: Any) -> bool: ...

    def identity(self, instance: Any) -> Optional[Tuple[Any, ...]]: ...

    def related(self, instance: Any, association_name: str) -> Any: ...


class SQLAlchemyInspector:
    """RecordInspector backed by SQLAlchemy's runtime inspection API."""

    def __init__(self):
        self._field_names: Dict[type, FrozenSet[str]] = {}
        self._foreign_keys: Dict[type, Dict[str, Tuple[str, ...]]] = {}

    # ------------------------------------------------------------------
    # Record types
    # ------------------------------------------------------------------

    @staticmethod
    def mapper(record_type: type):
        return sa_inspect(record_type)

    def field_names(self, record_type: type) -> FrozenSet[str]:
        """Keys of every mapped column attribute."""
        names = self._field_names.get(record_type)
        if names is None:
            names = frozenset(prop.key for prop in self.mapper(record_type).column_attrs)
            self._field_names[record_type] = names
        return names

    def single_association_names(self, record_type: type) -> FrozenSet[str]:
        """Many-to-one and one-to-one relationships."""
        return frozenset(
            rel.key for rel in self.mapper(record_type).relationships if not rel.uselist
        )

    def collection_association_names(self, record_type: type) -> FrozenSet[str]:
        """One-to-many (and many-to-many) relationships."""
        return frozenset(
            rel.key for rel in self.mapper(record_type).relationships if rel.uselist
        )

    def many_to_one_foreign_keys(self, record_type: type) -> Dict[str, Tuple[str, ...]]:
        """Map each many-to-one relationship to the attribute keys of its local foreign key columns."""
        cached = self._foreign_keys.get(record_type)
        if cached is not None:
            return cached

        mapper = self.mapper(record_type)
        foreign_keys: Dict[str, Tuple[str, ...]] = {}
        for rel in mapper.relationships:
            if rel.direction is not MANYTOONE:
                continue
            keys = []
            for column in rel.local_columns:
                try:
                    keys.append(mapper.get_property_by_column(column).key)
                except UnmappedColumnError:
                    keys.append(column.key)
            foreign_keys[rel.key] = tuple(sorted(keys))
        self._foreign_keys[record_type] = foreign_keys
        return foreign_keys

    def related_type(self, record_type: type, association_name: str) -> type:
        return self.mapper(record_type).relationships[association_name].mapper.class_

    def primary_key_names(self, record_type: type) -> Tuple[str, ...]:
        mapper = self.mapper(record_type)
        return tuple(mapper.get_property_by_column(column).key for column in mapper.primary_key)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def is_new(self, instance: Any) -> bool:
        """True for transient and pending (never flushed) instances."""
        state = sa_inspect(instance)
        return state.transient or state.pending

    def changed_field_names(self, instance: Any) -> FrozenSet[str]:
        """
        Names of column attributes and single-valued relationships with
        unflushed changes. Collections are not reported here; their members
        are scanned by the staleness evaluator instead.
        """
        record_type = type(instance)
        tracked = self.field_names(record_type) | self.single_association_names(record_type)
        state = sa_inspect(instance)
        return frozenset(
            attr.key for attr in state.attrs
            if attr.key in tracked and attr.history.has_changes()
        )

    def has_changed(self, instance: Any) -> bool:
        return bool(self.changed_field_names(instance))

    def identity(self, instance: Any) -> Optional[Tuple[Any, ...]]:
        return sa_inspect(instance).identity

    def related(self, instance: Any, association_name: str) -> Any:
        return getattr(instance, association_name)
