"""
Loading option dataclasses from YAML / dictionaries, and logging setup.

Example YAML:

    reconstruction_estimator_type: hybrid
    num_threads: 4
    ransac_type: prosac
    intrinsics_to_optimize: [focal_length, radial_distortion]
    bundle_adjustment_loss_function_type: huber
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from pathlib import Path
from typing import Any, Dict, Type, TypeVar, Union, get_type_hints

import yaml

from robust_sfm.pipeline.reconstruction_estimator import ReconstructionEstimatorOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure the root logger with the package's message format."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _convert_enum(enum_cls: Type[enum.Enum], value: Any) -> enum.Enum:
    if isinstance(value, enum_cls):
        return value
    if issubclass(enum_cls, enum.Flag) and not isinstance(value, int):
        names = value.split("|") if isinstance(value, str) else list(value)
        result = enum_cls(0)
        for name in names:
            result |= _convert_enum_member(enum_cls, str(name).strip())
        return result
    if isinstance(value, str):
        return _convert_enum_member(enum_cls, value)
    return enum_cls(value)


def _convert_enum_member(enum_cls: Type[enum.Enum], name: str) -> enum.Enum:
    members = enum_cls.__members__
    if name.upper() in members:
        return members[name.upper()]
    for member in members.values():
        if name == member.value:
            return member
    choices = ", ".join(key.lower() for key in members)
    raise ValueError(f"Invalid {enum_cls.__name__} '{name}'; expected one of: {choices}")


def _convert(field_type: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(field_type, type):
        if issubclass(field_type, enum.Enum):
            return _convert_enum(field_type, value)
        if dataclasses.is_dataclass(field_type):
            if isinstance(value, field_type):
                return value
            return dataclass_from_dict(field_type, value)
        if field_type is float and isinstance(value, (int, float)):
            return float(value)
        if field_type is int and isinstance(value, bool):
            raise ValueError(f"Expected an integer, got {value!r}")
    return value


def dataclass_from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
    """
    Build option dataclass `cls` from a (possibly nested) dictionary.

    Enum fields accept member names (case-insensitive) or values; flag fields
    additionally accept a list of names or an "a|b" string. Missing keys keep
    their defaults.

    Raises:
        ValueError: On unknown keys, invalid enum names, or values rejected
            by `cls` itself.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping for {cls.__name__}, got {type(data).__name__}")
    hints = get_type_hints(cls)
    names = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - names)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} option(s): {', '.join(unknown)}")
    kwargs = {key: _convert(hints[key], value) for key, value in data.items()}
    return cls(**kwargs)


def options_from_dict(data: Dict[str, Any]) -> ReconstructionEstimatorOptions:
    return dataclass_from_dict(ReconstructionEstimatorOptions, data)


def load_reconstruction_options(path: Union[str, Path]) -> ReconstructionEstimatorOptions:
    """
    Read ReconstructionEstimatorOptions from a YAML file. An empty file
    yields the defaults.
    """
    path = Path(path)
    with path.open("r") as f:
        data = yaml.safe_load(f) or {}
    options = options_from_dict(data)
    logger.info(f"Loaded reconstruction options from {path}")
    return options


__all__ = [
    "LOG_FORMAT",
    "setup_logging",
    "dataclass_from_dict",
    "options_from_dict",
    "load_reconstruction_options",
]
