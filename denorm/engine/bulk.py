"""
Bulk invalidation and recomputation.

These operations write rows directly through the store instead of loading
and flushing full object graphs: one UPDATE to unset fields across every
matching row, and a sweep that recomputes rows whose timestamps are NULL.
"""
from typing import Any, List, Optional, Set

from sqlalchemy import false, or_

from denorm.core.config import DenormConfig, get_config
from denorm.data.store import RowFilter, SQLAlchemyStore
from denorm.engine.cycle import RecomputeCycle
from denorm.engine.recompute import RecomputeEngine, normalize_field_names
from denorm.registry.fields import FieldRegistry
from denorm.utils.logger import get_logger

logger = get_logger("engine.bulk")

# Default for recompute_all_unset: take the limit from bulk_recompute_limit
CONFIGURED_LIMIT: Any = object()


class BulkOperations:
    """Row-level unset and recompute for one store (one session)."""

    def __init__(
        self,
        registry: FieldRegistry,
        engine: RecomputeEngine,
        store: SQLAlchemyStore,
        config: Optional[DenormConfig] = None,
    ):
        self.registry = registry
        self.engine = engine
        self.store = store
        self.config = config or get_config()

    def unset_filter(self, record_type: type):
        """Rows with any NULL computed-at timestamp; matches nothing when the type has no timestamps."""
        timestamps = sorted(self.registry.config_for(record_type).timestamp_field_names)
        if not timestamps:
            return false()
        return or_(*[getattr(record_type, name).is_(None) for name in timestamps])

    def select_unset(self, record_type: type, limit: Optional[int] = None) -> List[Any]:
        return self.store.select_matching(record_type, self.unset_filter(record_type), limit)

    def unset_for_all(self, record_type: type, field_names: Any, filter: RowFilter = None) -> Set[str]:
        """
        NULL the given fields (and their timestamps) on every row matching filter.

        Names that are not mapped columns are dropped. No statement is issued
        when nothing is left.

        Returns:
            The column names set to NULL
        """
        config = self.registry.config_for(record_type)
        names = normalize_field_names(field_names)
        to_unset = set(names)
        to_unset.update(
            timestamp for timestamp in (config.corresponding_timestamp(name) for name in names) if timestamp
        )
        to_unset &= self.store.inspector.field_names(record_type)

        dropped = set(names) - to_unset
        if dropped:
            logger.debug(f"{config.name}: ignoring unknown fields {sorted(dropped)}")
        if not to_unset:
            return set()

        rows = self.store.update_matching(record_type, {name: None for name in sorted(to_unset)}, filter)
        logger.info(f"Unset {sorted(to_unset)} on {rows} {config.name} row(s)")
        return to_unset

    def unset_for_instance(self, instance: Any, field_names: Any, cycle: Optional[RecomputeCycle] = None) -> Set[str]:
        """unset_for_all() restricted to the instance's own row."""
        unset = self.unset_for_all(type(instance), field_names, self.store.identity_criteria(instance))
        if cycle is not None:
            for name in unset:
                cycle.discard(instance, name)
        return unset

    def unset_all_for_instance(self, instance: Any, cycle: Optional[RecomputeCycle] = None) -> Set[str]:
        return self.unset_for_instance(instance, self.registry.denormalized_field_names(instance), cycle)

    def recompute_all_unset(self, record_type: type, limit: Any = CONFIGURED_LIMIT) -> int:
        """
        Recompute rows that have any unset value, via the bulk path.

        Args:
            record_type: Registered mapped class
            limit: Maximum rows to process, None for all (defaults to bulk_recompute_limit)

        Returns:
            Number of rows processed
        """
        if limit is CONFIGURED_LIMIT:
            limit = self.config.bulk_recompute_limit
        rows = self.select_unset(record_type, limit)
        for row in rows:
            self.engine.recompute_via_bulk_path(row, self.store)
        logger.info(f"Recomputed unset values on {len(rows)} {record_type.__name__} row(s)")
        return len(rows)
