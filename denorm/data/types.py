"""
Column types for structured denormalized values.
"""
import yaml
from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator


class YAMLEncoded(TypeDecorator):
    """
    Stores any YAML-safe Python value (lists, dicts, scalars) in a TEXT column.

    The bulk recompute path binds values with this type, so the encoding here
    runs exactly once per write.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return yaml.safe_dump(value, default_flow_style=False, sort_keys=True)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return yaml.safe_load(value)
