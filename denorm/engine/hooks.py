"""
Lifecycle hooks tying recomputation to SQLAlchemy flushes.

before_persist() runs for every new or dirty registered instance in
``before_flush``; the session's cycle is cleared in ``after_flush_postexec``,
``after_soft_rollback``, or when ``before_flush`` itself raises, so tracking
never leaks from one pass to the next.
"""
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from denorm.engine.cycle import RecomputeCycle, current_cycle
from denorm.engine.recompute import RecomputeEngine
from denorm.registry.fields import FieldRegistry
from denorm.utils.logger import get_logger

logger = get_logger("engine.hooks")


class LifecycleHooks:
    """Before/after persist integration points."""

    def __init__(self, registry: FieldRegistry, engine: RecomputeEngine):
        self.registry = registry
        self.engine = engine

    def before_persist(self, instance: Any, cycle: Optional[RecomputeCycle] = None) -> RecomputeCycle:
        """Bring denormalized values up to date (or unset stale ones for lazy types)."""
        cycle = cycle if cycle is not None else RecomputeCycle()
        if self.registry.config_for(instance).lazy:
            self.engine.unset_stale(instance, cycle)
        else:
            self.engine.recompute_if_needed(instance, force_all=False, cycle=cycle)
        return cycle

    def after_persist(self, instance: Any, cycle: RecomputeCycle) -> None:
        cycle.reset(instance)

    def persist(self, session: Session, instance: Any, flush: bool = True) -> None:
        """
        Explicitly save an instance.

        Unlike a plain flush, this evaluates the instance even when it has no
        pending changes, so "always" fields and values made stale by
        associated records are refreshed.
        """
        cycle = current_cycle(session)
        session.add(instance)
        try:
            self.before_persist(instance, cycle)
            if flush:
                session.flush()
        finally:
            self.after_persist(instance, cycle)

    # Session wiring ----------------------------------------------------

    def install(self, target: Any) -> None:
        """Listen on a Session, sessionmaker or the Session class."""
        if self.is_installed(target):
            return
        event.listen(target, "before_flush", self._before_flush)
        event.listen(target, "after_flush_postexec", self._after_flush_postexec)
        event.listen(target, "after_soft_rollback", self._after_soft_rollback)
        logger.debug(f"Installed denormalization hooks on {target!r}")

    def uninstall(self, target: Any) -> None:
        if not self.is_installed(target):
            return
        event.remove(target, "before_flush", self._before_flush)
        event.remove(target, "after_flush_postexec", self._after_flush_postexec)
        event.remove(target, "after_soft_rollback", self._after_soft_rollback)

    def is_installed(self, target: Any) -> bool:
        return event.contains(target, "before_flush", self._before_flush)

    def _before_flush(self, session: Session, flush_context: Any, instances: Any) -> None:
        cycle = current_cycle(session)
        try:
            for instance in list(session.new) + list(session.dirty):
                if self.registry.is_registered(instance):
                    self.before_persist(instance, cycle)
        except Exception:
            # No rollback event follows a failed before_flush
            cycle.reset()
            raise

    def _after_flush_postexec(self, session: Session, flush_context: Any) -> None:
        current_cycle(session).reset()

    def _after_soft_rollback(self, session: Session, previous_transaction: Any) -> None:
        current_cycle(session).reset()
