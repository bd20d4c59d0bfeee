"""
Recomputation of denormalized values.

Two write paths:
- recompute_if_needed() writes values onto the instance before it is
  flushed (the normal save path);
- recompute_via_bulk_path() writes straight to the instance's row with a
  single UPDATE, bypassing the flush and its hooks.
"""
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from denorm.core.errors import MissingComputeMethod
from denorm.data.inspector import attribute_key
from denorm.data.store import RecordStore
from denorm.engine.cycle import RecomputeCycle
from denorm.engine.staleness import StalenessEvaluator
from denorm.registry.fields import ComputeFunction, FieldRegistry
from denorm.utils.logger import get_logger

logger = get_logger("engine.recompute")


def normalize_field_names(fields: Any) -> List[str]:
    """Accept one field or an iterable of fields (strings or instrumented attributes)."""
    if fields is None:
        return []
    if isinstance(fields, str) or hasattr(fields, "key"):
        return [attribute_key(fields)]
    return list(dict.fromkeys(attribute_key(name) for name in fields if name is not None))


class RecomputeEngine:
    """Computes denormalized values and writes them with their timestamps."""

    def __init__(
        self,
        registry: FieldRegistry,
        evaluator: StalenessEvaluator,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.evaluator = evaluator
        self.inspector = evaluator.inspector
        self.clock = clock or datetime.now

    def compute_function(self, instance: Any, attribute_name: Any) -> ComputeFunction:
        config = self.registry.config_for(instance)
        spec = config.field(attribute_name)
        if spec is None:
            raise ValueError(f"{attribute_key(attribute_name)} is not a denormalized field of {config.name}")
        if spec.compute is None:
            logger.error(f"{config.name}.{spec.attribute_name}: compute function {spec.compute_method_name} is missing")
            raise MissingComputeMethod(config.record_type, spec.compute_method_name)
        return spec.compute

    def compute_value(self, instance: Any, attribute_name: Any) -> Any:
        """Run the compute function without writing anything."""
        return self.compute_function(instance, attribute_name)(instance)

    def needs_recompute(self, instance: Any, attribute_name: Any) -> bool:
        return self.evaluator.is_unset(instance, attribute_name) or self.evaluator.is_stale(instance, attribute_name)

    def recompute_if_needed(
        self,
        instance: Any,
        force_all: bool = False,
        cycle: Optional[RecomputeCycle] = None,
    ) -> RecomputeCycle:
        """
        Recompute every unset or stale field (every field with force_all).

        Fields already recomputed in cycle are skipped, so repeated calls in
        one persist pass compute each value once.

        Returns:
            The cycle used (a new one when none was given)
        """
        cycle = cycle if cycle is not None else RecomputeCycle()
        for name in self.registry.config_for(instance).field_names:
            if force_all or self.needs_recompute(instance, name):
                self.recompute_field(instance, name, cycle)
        return cycle

    def recompute_field(self, instance: Any, attribute_name: Any, cycle: RecomputeCycle) -> bool:
        """Compute and write one field and its timestamp. Returns False if the cycle already did it."""
        name = attribute_key(attribute_name)
        function = self.compute_function(instance, name)
        if cycle.was_recomputed(instance, name):
            return False

        setattr(instance, name, function(instance))
        timestamp = self.registry.corresponding_timestamp(instance, name)
        if timestamp:
            setattr(instance, timestamp, self.clock())
        cycle.mark(instance, name)
        logger.debug(f"Recomputed {type(instance).__name__}.{name}")
        return True

    def recompute_via_bulk_path(
        self,
        instance: Any,
        store: RecordStore,
        fields: Optional[Iterable[Any]] = None,
    ) -> Dict[str, Any]:
        """
        Recompute unset or stale fields and write them with one direct UPDATE.

        New instances are skipped. The instance is left reflecting the row,
        without pending changes.

        Returns:
            The field → value mapping written (empty if nothing was stale)
        """
        if self.inspector.is_new(instance):
            return {}

        config = self.registry.config_for(instance)
        names = normalize_field_names(fields) if fields is not None else config.field_names
        now = self.clock()
        updates: Dict[str, Any] = {}
        for name in names:
            if not config.is_denormalized_field(name):
                continue
            if self.needs_recompute(instance, name):
                updates[name] = self.compute_value(instance, name)
                timestamp = config.corresponding_timestamp(name)
                if timestamp:
                    updates[timestamp] = now

        if updates:
            record_type = type(instance)
            encoded = {name: store.encode_value(record_type, name, value) for name, value in updates.items()}
            store.update_instance(instance, encoded)
            store.write_committed(instance, updates)
            logger.debug(f"Bulk-recomputed {config.name} {sorted(updates)}")
        return updates

    def recompute(self, instance: Any, store: RecordStore) -> Dict[str, Any]:
        """Unset every field in memory, then recompute all of them through the bulk path."""
        self.unset_values(instance)
        return self.recompute_via_bulk_path(instance, store)

    # Invalidation ------------------------------------------------------

    def unset_value(self, instance: Any, attribute_name: Any, cycle: Optional[RecomputeCycle] = None) -> None:
        """Null a field and its timestamp in memory so the next persist recomputes it."""
        config = self.registry.config_for(instance)
        spec = config.field(attribute_name)
        if spec is None:
            logger.debug(f"{config.name}: {attribute_key(attribute_name)} is not denormalized; not unset")
            return
        setattr(instance, spec.attribute_name, None)
        if spec.timestamp_field_name:
            setattr(instance, spec.timestamp_field_name, None)
        if cycle is not None:
            cycle.discard(instance, spec.attribute_name)

    def unset_values(self, instance: Any, fields: Any = None, cycle: Optional[RecomputeCycle] = None) -> None:
        """Unset the given fields, or every denormalized field when none are given."""
        names = normalize_field_names(fields) or self.registry.config_for(instance).field_names
        for name in names:
            self.unset_value(instance, name, cycle)

    def unset_stale(self, instance: Any, cycle: Optional[RecomputeCycle] = None) -> List[str]:
        """Unset every stale field. Returns the names unset."""
        stale = self.evaluator.stale_fields(instance)
        if stale:
            self.unset_values(instance, stale, cycle)
        return stale

    # Reads -------------------------------------------------------------

    def read_value(self, instance: Any, attribute_name: Any) -> Any:
        """The cached value when usable, otherwise a fresh (uncached) computation."""
        name = attribute_key(attribute_name)
        if self.evaluator.usable(instance, name):
            return getattr(instance, name)
        return self.compute_value(instance, name)


class ReadThroughAccessor:
    """
    Class attribute exposing a denormalized field under its base name
    (post.user_name for denormalized_user_name).
    """

    def __init__(self, engine: RecomputeEngine, attribute_name: str):
        self.engine = engine
        self.attribute_name = attribute_name

    def __get__(self, instance: Any, owner: Any = None) -> Any:
        if instance is None:
            return self
        return self.engine.read_value(instance, self.attribute_name)
