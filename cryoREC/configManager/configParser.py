import json
import re
from dataclasses import fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml

from cryoREC.configManager.inject_defaults import _to_enum
from cryoREC.configs.mainConfig import main_config
from cryoREC.utils.exceptions import ConfigurationError
from cryoREC.utils.loggers import getMainLogger


class ConfigOverrideSystem:
    """Override config values from YAML files or from ``section.key=value`` strings."""

    @staticmethod
    def get_all_config_paths(config: Any, prefix: str = "") -> List[str]:
        """List every leaf of the config tree as ``path = value (type)``."""
        paths = []
        for f in fields(config):
            value = getattr(config, f.name)
            path = f"{prefix}.{f.name}" if prefix else f.name
            if is_dataclass(value):
                paths.extend(ConfigOverrideSystem.get_all_config_paths(value, path))
            else:
                paths.append(f"{path} = {value!r} ({type(value).__name__})")
        return paths

    @staticmethod
    def parse_value(value_str: str) -> Any:
        """Parse a string value into the appropriate Python type."""
        if len(value_str) >= 2 and value_str[0] == value_str[-1] and value_str[0] in "\"'":
            return value_str[1:-1]
        lowered = value_str.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        if lowered == "none":
            return None
        if value_str.startswith('[') and value_str.endswith(']'):
            try:
                return json.loads(value_str)
            except json.JSONDecodeError:
                items = value_str[1:-1].split(',')
                return [ConfigOverrideSystem.parse_value(item.strip()) for item in items if item.strip()]
        if '/' in value_str or '\\' in value_str:
            return Path(value_str)
        try:
            return float(value_str) if ('.' in value_str or 'e' in lowered) else int(value_str)
        except ValueError:
            return value_str

    @staticmethod
    def parse_config_assignments(assignments: Sequence[str]) -> Dict[str, Any]:
        """Parse assignments like 'reconstruct.grid_iters=20' into a nested dict."""
        overrides: Dict[str, Any] = {}
        for assignment in assignments:
            match = re.match(r'^(.+?)=(.+)$', assignment)
            if not match:
                raise ConfigurationError(f"Invalid config assignment: {assignment}. Expected format: key=value")
            key, value_str = (x.strip() for x in match.groups())
            *parents, leaf = key.split('.')
            current = overrides
            for k in parents:
                current = current.setdefault(k, {})
            current[leaf] = ConfigOverrideSystem.parse_value(value_str)
        return overrides

    @staticmethod
    def load_yaml_config(yaml_path: Union[str, Path]) -> Dict[str, Any]:
        with open(yaml_path, 'r') as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def apply_overrides(config: Any, overrides: Dict[str, Any], path: str = "", verbose: bool = False) -> None:
        """Recursively apply a nested dict of overrides to a dataclass config. Unknown keys are an error."""
        logger = getMainLogger(verbose)
        field_types = {f.name: f.type for f in fields(config)}
        for key, value in overrides.items():
            current_path = f"{path}.{key}" if path else key
            if key not in field_types:
                raise ConfigurationError(f"Config '{path or type(config).__name__}' has no attribute '{key}'")
            current_value = getattr(config, key)
            if is_dataclass(current_value):
                if not isinstance(value, dict):
                    raise ConfigurationError(f"{current_path} is a config section, it cannot be set to {value!r}")
                ConfigOverrideSystem.apply_overrides(current_value, value, current_path, verbose=verbose)
                continue
            field_type = field_types[key]
            if isinstance(current_value, Enum):
                field_type = type(current_value)
            value = _to_enum(value, field_type)
            if isinstance(current_value, Path) and value is not None and not isinstance(value, Path):
                value = Path(value)
            elif isinstance(current_value, float) and isinstance(value, int) and not isinstance(value, bool):
                value = float(value)
            setattr(config, key, value)
            logger.info(f"Set {current_path} = {value}")

    @staticmethod
    def update_config_from_file(config, config_fname, verbose=False):
        ConfigOverrideSystem.apply_overrides(config, ConfigOverrideSystem.load_yaml_config(config_fname),
                                             verbose=verbose)
        return config

    @staticmethod
    def update_config_from_configstrings(config, source_configstrings: Sequence[str], verbose=False):
        overrides = ConfigOverrideSystem.parse_config_assignments(source_configstrings)
        ConfigOverrideSystem.apply_overrides(config, overrides, verbose=verbose)
        return config


def dataclass_to_dict(obj: Any) -> Any:
    """Convert a dataclass tree into plain YAML-serializable values."""
    if is_dataclass(obj):
        return {f.name: dataclass_to_dict(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (list, tuple)):
        return [dataclass_to_dict(item) for item in obj]
    if isinstance(obj, dict):
        return {k: dataclass_to_dict(v) for k, v in obj.items()}
    return obj


def export_config_to_yaml(config: Any, filepath: Union[str, Path]) -> None:
    with open(filepath, 'w') as f:
        yaml.dump(dataclass_to_dict(config), f, default_flow_style=False, sort_keys=False)


def configure(config_items: Optional[Sequence[str]] = None, config: Any = main_config, verbose: bool = False):
    """
    Apply a list of overrides to the config. Each item is either a YAML file or a ``key=value`` assignment;
    they are applied in order.
    """
    for item in config_items or []:
        if '=' not in item and Path(item).suffix.lower() in (".yaml", ".yml"):
            ConfigOverrideSystem.update_config_from_file(config, item, verbose=verbose)
        else:
            ConfigOverrideSystem.update_config_from_configstrings(config, [item], verbose=verbose)
    return config
