"""
Persist-pass bookkeeping.

A RecomputeCycle remembers which fields were already recomputed on which
instances during one persist pass, so the same value is never computed twice
before the row is written. Hooks installed on a Session keep the session's
cycle in ``session.info`` and reset it once the flush finishes or rolls back.
"""
from typing import Any, Dict, FrozenSet, Set, Tuple

from sqlalchemy.orm import Session

CYCLE_KEY = "denorm.cycle"


class RecomputeCycle:
    """Field names recomputed per instance during one persist pass."""

    def __init__(self):
        # id(instance) → (instance, names); holding the instance keeps its id stable
        self._entries: Dict[int, Tuple[Any, Set[str]]] = {}

    def recomputed(self, instance: Any) -> FrozenSet[str]:
        entry = self._entries.get(id(instance))
        return frozenset(entry[1]) if entry else frozenset()

    def was_recomputed(self, instance: Any, attribute_name: str) -> bool:
        entry = self._entries.get(id(instance))
        return bool(entry) and attribute_name in entry[1]

    def mark(self, instance: Any, attribute_name: str) -> None:
        entry = self._entries.setdefault(id(instance), (instance, set()))
        entry[1].add(attribute_name)

    def discard(self, instance: Any, attribute_name: str) -> None:
        entry = self._entries.get(id(instance))
        if entry:
            entry[1].discard(attribute_name)

    def reset(self, instance: Any = None) -> None:
        """Forget one instance, or everything when instance is None."""
        if instance is None:
            self._entries.clear()
        else:
            self._entries.pop(id(instance), None)

    def is_empty(self) -> bool:
        return not any(names for _, names in self._entries.values())


def current_cycle(session: Session) -> RecomputeCycle:
    """The cycle of the session's current persist pass."""
    cycle = session.info.get(CYCLE_KEY)
    if cycle is None:
        cycle = session.info[CYCLE_KEY] = RecomputeCycle()
    return cycle
