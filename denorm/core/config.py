"""
Configuration management for denorm.

Loads settings from YAML config file and provides typed access.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import yaml

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()


def _project_root() -> Path:
    """Return project root (parent of denorm package)."""
    return Path(__file__).resolve().parent.parent.parent


DEFAULT_CONFIG_PATH = _project_root() / "config" / "default.yaml"


@dataclass
class DenormConfig:
    """Defaults applied when a record type is registered without explicit options."""

    # Naming conventions
    attribute_prefix: str = "denormalized_"
    compute_method_prefix: Optional[str] = None   # None = "compute_" + attribute_prefix
    timestamp_suffix: str = "_computed_at"
    updated_at_attribute: str = "updated_at"      # Last-modified column used for association checks

    # Registration behaviour
    read_through_accessors: bool = True           # Attach base-name accessors to mapped classes
    strict_compute_functions: bool = False        # Fail at registration when a compute function is missing

    # Bulk sweeps
    bulk_recompute_limit: Optional[int] = None    # None = unbounded

    # Runtime
    log_level: str = "INFO"
    database_url: str = ""

    def resolved_compute_method_prefix(self, attribute_prefix: Optional[str] = None) -> str:
        """Return the compute prefix, deriving it from the attribute prefix when unset."""
        if self.compute_method_prefix:
            return self.compute_method_prefix
        return f"compute_{attribute_prefix or self.attribute_prefix}"

    @classmethod
    def from_yaml(cls, config_path: Optional[Path] = None) -> "DenormConfig":
        """Load configuration from YAML file."""
        env_path = os.getenv("DENORM_CONFIG")
        path = config_path or (Path(env_path) if env_path else DEFAULT_CONFIG_PATH)
        database_url = os.getenv("DATABASE_URL") or ""
        if not path.exists():
            return cls(database_url=database_url, log_level=os.getenv("LOG_LEVEL", "INFO"))

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        denorm_config = data.get('denorm', {})
        database_config = data.get('database', {})
        logging_config = data.get('logging', {})

        return cls(
            attribute_prefix=denorm_config.get('attribute_prefix', 'denormalized_'),
            compute_method_prefix=denorm_config.get('compute_method_prefix'),
            timestamp_suffix=denorm_config.get('timestamp_suffix', '_computed_at'),
            updated_at_attribute=denorm_config.get('updated_at_attribute', 'updated_at'),
            read_through_accessors=denorm_config.get('read_through_accessors', True),
            strict_compute_functions=denorm_config.get('strict_compute_functions', False),
            bulk_recompute_limit=denorm_config.get('bulk_recompute_limit'),
            log_level=os.getenv("LOG_LEVEL") or logging_config.get('level', 'INFO'),
            database_url=database_url or database_config.get('url', ''),
        )


# Global config instance
_config: Optional[DenormConfig] = None


def get_config() -> DenormConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = DenormConfig.from_yaml()
    return _config


def set_config(config: Optional[DenormConfig]) -> None:
    """Set the global configuration instance (None reloads from YAML on next access)."""
    global _config
    _config = config
