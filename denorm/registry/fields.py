"""
Field Registry for denormalized attributes.

Describes, per mapped record type, which columns hold denormalized values,
which columns hold their computed-at timestamps, what triggers a
recomputation, and which function computes each value.

Classification is purely by naming convention over the mapped columns:

    denormalized_user_name               → denormalized field
    denormalized_user_name_computed_at   → its timestamp

A RecordTypeConfig is built once per registration and never mutated; it is
shared by every instance of the type.
"""
import re
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from denorm.core.config import DenormConfig, get_config
from denorm.core.errors import MissingComputeMethod, RegistrationError, UnregisteredRecordType
from denorm.data.inspector import SQLAlchemyInspector, attribute_key
from denorm.utils.logger import get_logger

logger = get_logger("registry.fields")

ALWAYS = "always"

TriggerSet = Union[Literal["always"], FrozenSet[str]]
ComputeFunction = Callable[[Any], Any]


class DenormalizedFieldSpec(BaseModel):
    """
    Definition of a single denormalized field on a record type.
    """
    model_config = ConfigDict(frozen=True)

    attribute_name: str = Field(..., description="Mapped column holding the cached value")
    base_name: str = Field(..., description="Attribute name without the configured prefix")
    compute_method_name: str = Field(..., description="Conventional name of the compute method")
    compute: Optional[ComputeFunction] = Field(None, description="Resolved compute function, called with the instance")
    timestamp_field_name: Optional[str] = Field(None, description="Mapped computed-at column, if the schema has one")
    triggers: TriggerSet = Field(default_factory=frozenset, description="'always', or names whose change makes the value stale")
    invalid_when_null: bool = False

    @property
    def always(self) -> bool:
        return self.triggers == ALWAYS


class RecordTypeConfig(BaseModel):
    """
    Complete denormalization settings for one record type.
    """
    model_config = ConfigDict(frozen=True)

    record_type: Any
    attribute_prefix: str = "denormalized_"
    compute_method_prefix: str = "compute_denormalized_"
    timestamp_suffix: str = "_computed_at"
    updated_at_attribute: str = "updated_at"
    lazy: bool = False
    field_specs: Mapping[str, DenormalizedFieldSpec] = Field(default_factory=dict, validate_default=True)
    timestamp_field_names: FrozenSet[str] = Field(default_factory=frozenset)
    triggers_by_field: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)
    invalid_when_null_fields: FrozenSet[str] = Field(default_factory=frozenset)

    @field_validator("field_specs", "triggers_by_field", mode="after")
    @classmethod
    def _read_only(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(value))

    @property
    def name(self) -> str:
        return self.record_type.__name__

    @property
    def field_names(self) -> List[str]:
        return list(self.field_specs)

    def field(self, attribute_name: Any) -> Optional[DenormalizedFieldSpec]:
        return self.field_specs.get(attribute_key(attribute_name))

    def is_denormalized_field(self, name: Any) -> bool:
        return attribute_key(name) in self.field_specs

    def is_timestamp_field(self, name: Any) -> bool:
        return attribute_key(name) in self.timestamp_field_names

    def base_name(self, attribute_name: Any) -> str:
        """user_name for denormalized_user_name; names without the prefix are returned unchanged."""
        name = attribute_key(attribute_name)
        if name.startswith(self.attribute_prefix):
            return name[len(self.attribute_prefix):]
        return name

    def attribute_name_from_base_name(self, base_name: Any) -> str:
        return f"{self.attribute_prefix}{attribute_key(base_name)}"

    def compute_method_name(self, attribute_name: Any) -> str:
        return f"{self.compute_method_prefix}{self.base_name(attribute_name)}"

    def corresponding_timestamp(self, attribute_name: Any) -> Optional[str]:
        spec = self.field(attribute_name)
        return spec.timestamp_field_name if spec else None

    def triggers(self, attribute_name: Any) -> TriggerSet:
        spec = self.field(attribute_name)
        return spec.triggers if spec else frozenset()


def _field_pattern(prefix: str) -> "re.Pattern[str]":
    return re.compile(rf"^{re.escape(prefix)}.+$")


def _timestamp_pattern(prefix: str, suffix: str) -> "re.Pattern[str]":
    return re.compile(rf"^{re.escape(prefix)}.+{re.escape(suffix)}$")


def classify_fields(field_names: Iterable[str], prefix: str, suffix: str):
    """Split mapped column names into (denormalized fields, timestamp fields)."""
    field_re = _field_pattern(prefix)
    timestamp_re = _timestamp_pattern(prefix, suffix)
    denormalized, timestamps = [], []
    for name in sorted(field_names):
        if timestamp_re.match(name):
            timestamps.append(name)
        elif field_re.match(name):
            denormalized.append(name)
    return denormalized, timestamps


def normalize_trigger_spec(spec: Any) -> TriggerSet:
    """
    Accepts 'always', a single name, or an iterable of names (strings or
    instrumented attributes).
    """
    if spec is None:
        return frozenset()
    if isinstance(spec, str):
        return ALWAYS if spec == ALWAYS else frozenset([spec])
    if isinstance(spec, (list, tuple, set, frozenset)):
        names = [attribute_key(item) for item in spec]
        if ALWAYS in names:
            if len(set(names)) > 1:
                raise RegistrationError(f"'{ALWAYS}' cannot be combined with other triggers: {sorted(names)}")
            return ALWAYS
        return frozenset(names)
    if hasattr(spec, "key"):
        return frozenset([attribute_key(spec)])
    raise RegistrationError(f"Invalid trigger specification: {spec!r}")


class FieldRegistry:
    """
    Registry of denormalization settings per record type.

    One registry is created per application (usually owned by a
    Denormalizer) and lives for the application's lifetime.
    """

    def __init__(self, inspector: Optional[SQLAlchemyInspector] = None, config: Optional[DenormConfig] = None):
        self.inspector = inspector or SQLAlchemyInspector()
        self.config = config or get_config()
        self._configs: Dict[type, RecordTypeConfig] = {}

    def register(
        self,
        record_type: type,
        attribute_prefix: Optional[str] = None,
        compute_method_prefix: Optional[str] = None,
        timestamp_suffix: Optional[str] = None,
        triggers_by_field: Optional[Mapping[Any, Any]] = None,
        invalid_when_null_fields: Optional[Iterable[Any]] = None,
        compute_functions: Optional[Mapping[Any, ComputeFunction]] = None,
        updated_at_attribute: Optional[str] = None,
        lazy: Optional[bool] = None,
        strict: Optional[bool] = None,
    ) -> RecordTypeConfig:
        """
        Register a mapped class and build its immutable RecordTypeConfig.

        Args:
            record_type: SQLAlchemy mapped class
            attribute_prefix: Prefix marking denormalized columns
            compute_method_prefix: Prefix of conventional compute methods
            timestamp_suffix: Suffix of computed-at columns
            triggers_by_field: Field (name, base name or attribute) → 'always' or trigger names
            invalid_when_null_fields: Fields whose None value is always stale
            compute_functions: Field → callable(instance), overriding the naming convention
            updated_at_attribute: Last-modified attribute compared for association staleness
            lazy: Unset stale values on persist instead of computing them
            strict: Raise MissingComputeMethod now instead of at recompute time

        Returns:
            The registered RecordTypeConfig
        """
        defaults = self.config
        prefix = attribute_prefix or defaults.attribute_prefix
        compute_prefix = compute_method_prefix or defaults.resolved_compute_method_prefix(prefix)
        suffix = timestamp_suffix or defaults.timestamp_suffix
        strict = defaults.strict_compute_functions if strict is None else strict

        schema_fields = self.inspector.field_names(record_type)
        denormalized, timestamps = classify_fields(schema_fields, prefix, suffix)
        known = set(denormalized)

        def resolve(name: Any, option: str) -> Optional[str]:
            key = attribute_key(name)
            if key in known:
                return key
            if f"{prefix}{key}" in known:
                return f"{prefix}{key}"
            logger.warning(f"{record_type.__name__}: {option} names unknown denormalized field {key!r}; ignored")
            return None

        triggers_option: Dict[str, Any] = {}
        for name, spec in (triggers_by_field or {}).items():
            key = resolve(name, "triggers_by_field")
            if key:
                triggers_option[key] = normalize_trigger_spec(spec)

        invalid_when_null = frozenset(
            key for key in (resolve(name, "invalid_when_null_fields") for name in (invalid_when_null_fields or []))
            if key
        )

        explicit_compute: Dict[str, ComputeFunction] = {}
        for name, function in (compute_functions or {}).items():
            key = resolve(name, "compute_functions")
            if key:
                explicit_compute[key] = function

        foreign_keys = self.inspector.many_to_one_foreign_keys(record_type)

        fields: Dict[str, DenormalizedFieldSpec] = {}
        for name in denormalized:
            base_name = name[len(prefix):]
            method_name = f"{compute_prefix}{base_name}"
            compute = explicit_compute.get(name)
            if compute is None:
                candidate = getattr(record_type, method_name, None)
                compute = candidate if callable(candidate) else None
            if compute is None:
                if strict:
                    raise MissingComputeMethod(record_type, method_name)
                logger.warning(f"{record_type.__name__}.{name} has no compute function ({method_name})")

            triggers = triggers_option.get(name, frozenset())
            if triggers != ALWAYS:
                # A changed foreign key is how a swapped many-to-one association shows up
                expanded = set(triggers)
                for trigger in triggers:
                    expanded.update(foreign_keys.get(trigger, ()))
                triggers = frozenset(expanded)

            timestamp = f"{name}{suffix}"
            fields[name] = DenormalizedFieldSpec(
                attribute_name=name,
                base_name=base_name,
                compute_method_name=method_name,
                compute=compute,
                timestamp_field_name=timestamp if timestamp in schema_fields else None,
                triggers=triggers,
                invalid_when_null=name in invalid_when_null,
            )

        config = RecordTypeConfig(
            record_type=record_type,
            attribute_prefix=prefix,
            compute_method_prefix=compute_prefix,
            timestamp_suffix=suffix,
            updated_at_attribute=updated_at_attribute or defaults.updated_at_attribute,
            lazy=bool(lazy),
            field_specs=fields,
            timestamp_field_names=frozenset(timestamps),
            triggers_by_field=triggers_option,
            invalid_when_null_fields=invalid_when_null,
        )
        self._configs[record_type] = config
        logger.info(
            f"Registered {record_type.__name__}: {len(fields)} denormalized field(s), "
            f"{len(timestamps)} timestamp(s)"
        )
        return config

    def unregister(self, record_type: type) -> None:
        self._configs.pop(record_type, None)

    def registered_types(self) -> List[type]:
        return list(self._configs)

    def _lookup(self, record_type: Any) -> Optional[RecordTypeConfig]:
        if not isinstance(record_type, type):
            record_type = type(record_type)
        for klass in record_type.__mro__:
            config = self._configs.get(klass)
            if config is not None:
                return config
        return None

    def is_registered(self, record_type: Any) -> bool:
        return self._lookup(record_type) is not None

    def config_for(self, record_type: Any) -> RecordTypeConfig:
        """Config for a record type or instance (subclasses inherit their base's registration)."""
        config = self._lookup(record_type)
        if config is None:
            raise UnregisteredRecordType(record_type if isinstance(record_type, type) else type(record_type))
        return config

    def field_spec(self, record_type: Any, attribute_name: Any) -> Optional[DenormalizedFieldSpec]:
        return self.config_for(record_type).field(attribute_name)

    # Naming conventions ------------------------------------------------

    def denormalized_field_names(self, record_type: Any) -> List[str]:
        return self.config_for(record_type).field_names

    def timestamp_field_names(self, record_type: Any) -> List[str]:
        return sorted(self.config_for(record_type).timestamp_field_names)

    def is_denormalized_field(self, record_type: Any, name: Any) -> bool:
        return self.config_for(record_type).is_denormalized_field(name)

    def is_timestamp_field(self, record_type: Any, name: Any) -> bool:
        return self.config_for(record_type).is_timestamp_field(name)

    def base_name(self, record_type: Any, attribute_name: Any) -> str:
        return self.config_for(record_type).base_name(attribute_name)

    def attribute_name_from_base_name(self, record_type: Any, base_name: Any) -> str:
        return self.config_for(record_type).attribute_name_from_base_name(base_name)

    def compute_method_name(self, record_type: Any, attribute_name: Any) -> str:
        return self.config_for(record_type).compute_method_name(attribute_name)

    def corresponding_timestamp(self, record_type: Any, attribute_name: Any) -> Optional[str]:
        return self.config_for(record_type).corresponding_timestamp(attribute_name)

    def has_corresponding_timestamp(self, record_type: Any, attribute_name: Any) -> bool:
        return self.corresponding_timestamp(record_type, attribute_name) is not None

    def triggers(self, record_type: Any, attribute_name: Any) -> TriggerSet:
        return self.config_for(record_type).triggers(attribute_name)
