import logging
import os
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .core_logic.drift_engine import ComputedFieldPolicy, default_computed_field_policy
from .models import SourceFormat

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = ".iac-drift.yml"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ComputedFieldsConfig(BaseModel):
    # Added on top of the built-in lists unless replace_defaults is set
    extra_by_format: Dict[SourceFormat, List[str]] = Field(default_factory=dict)
    extra_by_type: Dict[str, List[str]] = Field(default_factory=dict)
    replace_defaults: bool = False


class DriftDetectorConfig(BaseModel):
    computed_fields: ComputedFieldsConfig = Field(default_factory=ComputedFieldsConfig)
    ignore_unresolved_references: bool = False
    include_data_sources: bool = False
    max_workers: Optional[int] = None
    log_level: str = "INFO"

    @field_validator("max_workers")
    @classmethod
    def positive_workers(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("max_workers must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    def build_computed_field_policy(self) -> ComputedFieldPolicy:
        policy = default_computed_field_policy()
        if self.computed_fields.replace_defaults:
            # The resource envelope (apiVersion, kind, metadata, status) stays skipped
            policy = ComputedFieldPolicy(top_level_by_format=policy.top_level_by_format)
        by_format = dict(policy.by_format)
        for source_format, fields in self.computed_fields.extra_by_format.items():
            by_format[source_format] = by_format.get(source_format, frozenset()) | frozenset(fields)
        by_type = dict(policy.by_type)
        for resource_type, fields in self.computed_fields.extra_by_type.items():
            by_type[resource_type] = by_type.get(resource_type, frozenset()) | frozenset(fields)
        return policy.model_copy(update={"by_format": by_format, "by_type": by_type})


def find_config_file(start_dir: Optional[str] = None) -> Optional[str]:
    """Looks for .iac-drift.yml in start_dir (default: cwd) and its parents."""
    current_dir = os.path.abspath(start_dir or os.getcwd())
    while True:
        candidate = os.path.join(current_dir, DEFAULT_CONFIG_FILENAME)
        if os.path.exists(candidate):
            return candidate
        parent_dir = os.path.dirname(current_dir)
        if parent_dir == current_dir:  # Reached root directory
            return None
        current_dir = parent_dir


def load_drift_config(config_path: Optional[str] = None) -> DriftDetectorConfig:
    """
    Loads detector settings from a YAML file.
    If config_path is None, searches for '.iac-drift.yml' from the current directory upward.
    If no file is found, returns the default configuration.
    """
    actual_config_path = config_path or find_config_file()

    if actual_config_path and os.path.exists(actual_config_path):
        logger.info("Loading drift detector config from: %s", actual_config_path)
        try:
            with open(actual_config_path, "r") as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Error parsing YAML config file {actual_config_path}: {e}") from e
        except OSError as e:
            raise ValueError(f"Error reading config file {actual_config_path}: {e}") from e
        if config_data is None:  # Empty YAML file
            logger.warning("Config file '%s' is empty. Using defaults.", actual_config_path)
            return DriftDetectorConfig()
        if not isinstance(config_data, dict):
            raise ValueError(f"Config file {actual_config_path} must contain a mapping")
        try:
            return DriftDetectorConfig(**config_data)
        except ValidationError as e:
            raise ValueError(f"Config validation error in {actual_config_path}:\n{e}") from e

    if config_path:  # User specified a path but it wasn't found
        logger.warning("Config file '%s' not found. Using defaults.", config_path)
    else:
        logger.debug("No config file '%s' found. Using defaults.", DEFAULT_CONFIG_FILENAME)
    return DriftDetectorConfig()
