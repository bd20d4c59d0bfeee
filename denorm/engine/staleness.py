"""
Staleness rules for denormalized values.

A cached value is stale when:
1. the field is invalid-when-null and the value is None, or
2. one of its triggers changed on the record itself (empty triggers: any
   column changed; 'always': every time), or
3. a record reached through one of its trigger associations changed or was
   modified after the owner (compared by the updated_at attribute).

Association checks only look at directly named associations and are not
part of usable(): whoever changes an associated record out of band is
expected to unset the affected cached values.
"""
from typing import Any, List, Optional

from denorm.data.inspector import RecordInspector, attribute_key
from denorm.registry.fields import DenormalizedFieldSpec, FieldRegistry, RecordTypeConfig


def is_present(value: Any) -> bool:
    """False for None, blank strings and empty collections."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set, frozenset)):
        return bool(value)
    return True


class StalenessEvaluator:
    """Decides, per instance and field, whether a cached value can be trusted."""

    def __init__(self, registry: FieldRegistry, inspector: Optional[RecordInspector] = None):
        self.registry = registry
        self.inspector = inspector or registry.inspector

    def _spec(self, instance: Any, attribute_name: Any) -> Optional[DenormalizedFieldSpec]:
        return self.registry.config_for(instance).field(attribute_name)

    def is_stale(self, instance: Any, attribute_name: Any) -> bool:
        """True if the cached value needs recomputation."""
        spec = self._spec(instance, attribute_name)
        if spec is None:
            return False
        if spec.invalid_when_null and getattr(instance, spec.attribute_name) is None:
            return True
        return (
            self.stale_by_own_change(instance, spec.attribute_name)
            or self.stale_by_association_change(instance, spec.attribute_name)
        )

    def stale_by_own_change(self, instance: Any, attribute_name: Any) -> bool:
        spec = self._spec(instance, attribute_name)
        if spec is None:
            return False
        if spec.always:
            return True
        # No triggers means any change to the record's own columns
        if not spec.triggers:
            return self.inspector.has_changed(instance)
        return bool(spec.triggers & self.inspector.changed_field_names(instance))

    def stale_by_association_change(self, instance: Any, attribute_name: Any) -> bool:
        spec = self._spec(instance, attribute_name)
        if spec is None:
            return False
        if spec.always:
            return True
        if not spec.triggers:
            return False

        config = self.registry.config_for(instance)
        record_type = type(instance)
        single = self.inspector.single_association_names(record_type)
        collections = self.inspector.collection_association_names(record_type)
        owner_updated_at = getattr(instance, config.updated_at_attribute, None)

        for trigger in sorted(spec.triggers):
            if trigger in single:
                related = self.inspector.related(instance, trigger)
                if related is not None and (
                    self.inspector.has_changed(related)
                    or self._modified_since(related, owner_updated_at, config)
                ):
                    return True
            elif trigger in collections:
                for member in self.inspector.related(instance, trigger):
                    if (
                        self.inspector.is_new(member)
                        or self.inspector.has_changed(member)
                        or self._modified_since(member, owner_updated_at, config)
                    ):
                        return True
        return False

    def _modified_since(self, related: Any, owner_updated_at: Any, config: RecordTypeConfig) -> bool:
        """True if either timestamp is missing or related was modified after the owner."""
        if self.registry.is_registered(related):
            attribute = self.registry.config_for(related).updated_at_attribute
        else:
            attribute = config.updated_at_attribute
        related_updated_at = getattr(related, attribute, None)
        if related_updated_at is None or owner_updated_at is None:
            return True
        return related_updated_at > owner_updated_at

    def is_unset(self, instance: Any, attribute_name: Any) -> bool:
        """
        True if the value was never computed (or was unset).

        Fields without a computed-at timestamp can't tell "never computed"
        from "computed to None", so they are never reported unset.
        """
        spec = self._spec(instance, attribute_name)
        if spec is None or spec.timestamp_field_name is None:
            return False
        return getattr(instance, spec.timestamp_field_name) is None

    def usable(self, instance: Any, attribute_name: Any) -> bool:
        """True if the cached value may be returned in place of a computation."""
        name = attribute_key(attribute_name)
        if self.is_unset(instance, name) or self.stale_by_own_change(instance, name):
            return False
        spec = self._spec(instance, name)
        if spec is not None and spec.invalid_when_null:
            return is_present(getattr(instance, name))
        return True

    def stale_fields(self, instance: Any) -> List[str]:
        return [name for name in self.registry.config_for(instance).field_names if self.is_stale(instance, name)]

    def unset_fields(self, instance: Any) -> List[str]:
        return [name for name in self.registry.config_for(instance).field_names if self.is_unset(instance, name)]

    def any_unset(self, instance: Any) -> bool:
        return any(self.is_unset(instance, name) for name in self.registry.config_for(instance).field_names)
