"""
Direct row access for the bulk denormalization paths.

Issues ORM-enabled UPDATE and SELECT statements through a SQLAlchemy Session.
UPDATEs executed here bypass the session's flush, so the lifecycle hooks
never see them.
"""
from __future__ import annotations

from typing import Any, List, Mapping, Optional, Protocol, Sequence, Union

from sqlalchemy import literal, select, text, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.sql import ClauseElement
from sqlalchemy.types import TypeDecorator

from denorm.data.inspector import SQLAlchemyInspector, attribute_key
from denorm.utils.logger import get_logger

logger = get_logger("data.store")

# None, {"attr": value}, a clause, a list of clauses, or a raw SQL condition
RowFilter = Union[None, str, Mapping[str, Any], ClauseElement, Sequence[Any]]


class RecordStore(Protocol):
    """Storage capabilities the bulk paths need."""

    def update_matching(self, record_type: type, field_values: Mapping[str, Any],
                        filter: RowFilter = None, synchronize: Any = "fetch") -> int: ...

    def select_matching(self, record_type: type, filter: RowFilter = None,
                        limit: Optional[int] = None) -> List[Any]: ...

    def update_instance(self, instance: Any, field_values: Mapping[str, Any]) -> int: ...

    def encode_value(self, record_type: type, name: str, value: Any) -> Any: ...

    def write_committed(self, instance: Any, field_values: Mapping[str, Any]) -> None: ...


class SQLAlchemyStore:
    """RecordStore bound to one SQLAlchemy Session."""

    def __init__(self, session: Session, inspector: Optional[SQLAlchemyInspector] = None):
        self.session = session
        self.inspector = inspector or SQLAlchemyInspector()

    def criteria(self, record_type: type, filter: RowFilter) -> List[Any]:
        """Translate a row filter into WHERE criteria (empty list matches every row)."""
        if filter is None:
            return []
        if isinstance(filter, str):
            return [text(filter)]
        if isinstance(filter, ClauseElement):
            return [filter]
        if isinstance(filter, Mapping):
            known = self.inspector.field_names(record_type)
            clauses = []
            for name, value in filter.items():
                key = attribute_key(name)
                if key not in known:
                    raise ValueError(f"{record_type.__name__} has no field named {key!r}")
                clauses.append(getattr(record_type, key) == value)
            return clauses
        if isinstance(filter, (list, tuple)):
            return [text(item) if isinstance(item, str) else item for item in filter]
        raise TypeError(f"Unsupported row filter: {filter!r}")

    def identity_criteria(self, instance: Any) -> List[Any]:
        """WHERE criteria matching exactly the row of a persisted instance."""
        record_type = type(instance)
        identity = self.inspector.identity(instance)
        if identity is None:
            raise ValueError(f"{record_type.__name__} instance has not been persisted")
        names = self.inspector.primary_key_names(record_type)
        return [getattr(record_type, name) == value for name, value in zip(names, identity)]

    def update_matching(
        self,
        record_type: type,
        field_values: Mapping[str, Any],
        filter: RowFilter = None,
        synchronize: Any = "fetch",
    ) -> int:
        """Set each field to its value on every row matching filter. Returns the row count."""
        values = {getattr(record_type, attribute_key(name)): value for name, value in field_values.items()}
        stmt = (
            update(record_type)
            .where(*self.criteria(record_type, filter))
            .values(values)
            .execution_options(synchronize_session=synchronize)
        )
        result = self.session.execute(stmt)
        logger.debug(
            f"UPDATE {record_type.__name__} SET {sorted(attribute_key(n) for n in field_values)} "
            f"matched {result.rowcount} row(s)"
        )
        return result.rowcount

    def select_matching(
        self,
        record_type: type,
        filter: RowFilter = None,
        limit: Optional[int] = None,
    ) -> List[Any]:
        """Load instances matching filter, ordered by primary key."""
        pk_columns = [getattr(record_type, name) for name in self.inspector.primary_key_names(record_type)]
        stmt = select(record_type).where(*self.criteria(record_type, filter)).order_by(*pk_columns)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))

    def update_instance(self, instance: Any, field_values: Mapping[str, Any]) -> int:
        """UPDATE the single row behind a persisted instance without flushing it."""
        return self.update_matching(
            type(instance),
            field_values,
            self.identity_criteria(instance),
            synchronize=False,
        )

    def is_serialized(self, record_type: type, name: str) -> bool:
        """True for columns whose type encodes Python values (TypeDecorator subclasses)."""
        prop = self.inspector.mapper(record_type).column_attrs[name]
        return isinstance(prop.columns[0].type, TypeDecorator)

    def encode_value(self, record_type: type, name: str, value: Any) -> Any:
        """Bind a value for a serialized column to that column's type; other values pass through unchanged."""
        if value is None or not self.is_serialized(record_type, name):
            return value
        column_type = self.inspector.mapper(record_type).column_attrs[name].columns[0].type
        # The column type's own bind processing (process_bind_param or bind_processor) runs once
        return literal(value, type_=column_type)

    def write_committed(self, instance: Any, field_values: Mapping[str, Any]) -> None:
        """Reflect values already written to the row onto the instance without dirtying it."""
        for name, value in field_values.items():
            set_committed_value(instance, attribute_key(name), value)

    def read_field(self, instance: Any, name: str) -> Any:
        return getattr(instance, attribute_key(name))

    def write_field(self, instance: Any, name: str, value: Any) -> None:
        setattr(instance, attribute_key(name), value)

