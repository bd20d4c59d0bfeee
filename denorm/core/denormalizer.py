"""
Main denorm facade.

Wires the field registry, staleness evaluator, recompute engine and
lifecycle hooks together for one application, and hands out bulk
operations bound to a session.
"""
from dataclasses import fields as dataclass_fields, replace
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from denorm.core.config import DenormConfig, get_config
from denorm.data.inspector import SQLAlchemyInspector
from denorm.data.store import SQLAlchemyStore
from denorm.engine.bulk import BulkOperations
from denorm.engine.cycle import RecomputeCycle, current_cycle
from denorm.engine.hooks import LifecycleHooks
from denorm.engine.recompute import ReadThroughAccessor, RecomputeEngine
from denorm.engine.staleness import StalenessEvaluator
from denorm.registry.fields import FieldRegistry, RecordTypeConfig
from denorm.utils.logger import get_logger, set_level

logger = get_logger("core.denormalizer")


class Denormalizer:
    """
    Denormalized-value overlay for a set of SQLAlchemy mapped classes.

    Typical use:

        denormalizer = Denormalizer()
        denormalizer.register(Post, triggers_by_field={"denormalized_user_name": ["user"]})
        denormalizer.install(SessionLocal)
    """

    def __init__(
        self,
        config: Optional[DenormConfig] = None,
        inspector: Optional[SQLAlchemyInspector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the denormalizer.

        Args:
            config: Configuration object. Uses default config if not provided.
            inspector: Record inspector shared by every component
            clock: Source of computed-at timestamps (defaults to datetime.now)
        """
        self.config = config or get_config()
        self.inspector = inspector or SQLAlchemyInspector()
        self.registry = FieldRegistry(self.inspector, self.config)
        self.evaluator = StalenessEvaluator(self.registry, self.inspector)
        self.engine = RecomputeEngine(self.registry, self.evaluator, clock=clock)
        self.hooks = LifecycleHooks(self.registry, self.engine)

    def register(self, record_type: type, read_through_accessors: Optional[bool] = None, **options: Any) -> RecordTypeConfig:
        """
        Register a mapped class (see FieldRegistry.register for options) and
        attach its read-through accessors.
        """
        config = self.registry.register(record_type, **options)
        if self.config.read_through_accessors if read_through_accessors is None else read_through_accessors:
            self._attach_accessors(config)
        return config

    def _attach_accessors(self, config: RecordTypeConfig) -> None:
        record_type = config.record_type
        for spec in config.field_specs.values():
            existing = getattr(record_type, spec.base_name, None)
            if existing is not None and not isinstance(existing, ReadThroughAccessor):
                logger.warning(
                    f"{config.name}.{spec.base_name} already exists; no read-through accessor for {spec.attribute_name}"
                )
                continue
            setattr(record_type, spec.base_name, ReadThroughAccessor(self.engine, spec.attribute_name))

    # Sessions ----------------------------------------------------------

    def install(self, target: Any) -> None:
        """Recompute on flush for sessions created from target (Session, sessionmaker or Session class)."""
        self.hooks.install(target)

    def uninstall(self, target: Any) -> None:
        self.hooks.uninstall(target)

    def store(self, session: Session) -> SQLAlchemyStore:
        return SQLAlchemyStore(session, self.inspector)

    def bulk(self, session: Session) -> BulkOperations:
        return BulkOperations(self.registry, self.engine, self.store(session), self.config)

    def persist(self, session: Session, instance: Any, flush: bool = True) -> None:
        self.hooks.persist(session, instance, flush=flush)

    def cycle(self, session: Session) -> RecomputeCycle:
        return current_cycle(session)

    # Single-record shortcuts ------------------------------------------

    def is_stale(self, instance: Any, attribute_name: Any) -> bool:
        return self.evaluator.is_stale(instance, attribute_name)

    def is_unset(self, instance: Any, attribute_name: Any) -> bool:
        return self.evaluator.is_unset(instance, attribute_name)

    def usable(self, instance: Any, attribute_name: Any) -> bool:
        return self.evaluator.usable(instance, attribute_name)

    def recompute_if_needed(self, instance: Any, force_all: bool = False,
                            cycle: Optional[RecomputeCycle] = None) -> RecomputeCycle:
        return self.engine.recompute_if_needed(instance, force_all=force_all, cycle=cycle)

    def unset_value(self, instance: Any, attribute_name: Any, cycle: Optional[RecomputeCycle] = None) -> None:
        self.engine.unset_value(instance, attribute_name, cycle)


def create_denormalizer(clock: Optional[Callable[[], datetime]] = None, **kwargs: Any) -> Denormalizer:
    """
    Factory function to create a denormalizer with custom settings.

    Args:
        clock: Source of computed-at timestamps
        **kwargs: Config parameters to override (unknown names are ignored)

    Returns:
        Configured Denormalizer
    """
    known = {f.name for f in dataclass_fields(DenormConfig)}
    config = replace(get_config(), **{key: value for key, value in kwargs.items() if key in known})
    set_level(config.log_level)
    return Denormalizer(config, clock=clock)
