"""
denorm - denormalized-value cache overlay for SQLAlchemy models

Keeps precomputed columns (denormalized_*) up to date with:
- Field-level trigger tracking on the record and its associations
- Recomputation on flush, at most once per field per persist pass
- Bulk unset / recompute paths that write rows directly
"""

from denorm.core.config import DenormConfig, get_config, set_config
from denorm.core.denormalizer import Denormalizer, create_denormalizer
from denorm.core.errors import (
    DenormalizationError,
    MissingComputeMethod,
    RegistrationError,
    UnregisteredRecordType,
)
from denorm.data.types import YAMLEncoded
from denorm.engine.cycle import RecomputeCycle, current_cycle
from denorm.registry.fields import ALWAYS, DenormalizedFieldSpec, RecordTypeConfig

__all__ = [
    'Denormalizer',
    'create_denormalizer',
    'DenormConfig',
    'get_config',
    'set_config',
    'DenormalizationError',
    'MissingComputeMethod',
    'RegistrationError',
    'UnregisteredRecordType',
    'YAMLEncoded',
    'RecomputeCycle',
    'current_cycle',
    'ALWAYS',
    'DenormalizedFieldSpec',
    'RecordTypeConfig',
]

__version__ = '0.1.0'
