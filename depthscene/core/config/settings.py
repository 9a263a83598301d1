"""Deployment configuration.

Settings are loaded from YAML defaults and overridden by environment variables
prefixed with `DSC_`.
"""

from __future__ import annotations

import importlib
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any, cast

import pydantic
import yaml
from pydantic import Field

from depthscene.core.config.presets import SENSOR_PRESETS, SensorPreset

_pydantic_field_validator = getattr(pydantic, "field_validator", None)
if _pydantic_field_validator is not None:
    _field_validator: Callable[..., Any] = _pydantic_field_validator
else:
    # Pydantic v1: allow module reloads in tests without "duplicate validator" errors.
    def _field_validator(*args: Any, **kwargs: Any) -> Callable[..., Any]:
        kwargs.setdefault("allow_reuse", True)
        return pydantic.validator(*args, **kwargs)

try:
    _pydantic_settings = importlib.import_module("pydantic_settings")
except ModuleNotFoundError:
    _pydantic_settings = None

if _pydantic_settings is not None:
    BaseSettings = cast(Any, _pydantic_settings.BaseSettings)
    SettingsConfigDict = getattr(_pydantic_settings, "SettingsConfigDict", None)
else:
    try:
        # Pydantic v1
        from pydantic import BaseSettings
    except ImportError:
        # Pydantic v2 without pydantic-settings keeps the v1 API here.
        from pydantic.v1 import BaseSettings

    SettingsConfigDict = None


class SceneSettings(BaseSettings):
    """Runtime configuration loaded from YAML defaults and `DSC_` env overrides."""

    # Text file holding all tagged parameter bundles (see config.params).
    param_file: str | None = None
    # Saved background model for the color subtractor.
    background_file: str | None = None
    sensor: str = Field("kinect1", description="kinect1|kinect2")
    num_cams: int = 1

    # Overhead map geometry (inches).
    map_width: float = 192.0
    map_height: float = 192.0
    map_x0: float = 96.0
    map_y0: float = 0.0
    map_ipp: float = 0.5
    table_height: float = 0.0

    # Background subtraction working height and monochrome forcing.
    bg_hdes: int = 100
    bg_force_mono: int = 0

    # Optional Haar cascade override for the face probe.
    face_cascade: str | None = None

    # Pydantic v2 uses model_config; Pydantic v1 uses inner Config.
    if SettingsConfigDict is not None:
        model_config = SettingsConfigDict(env_prefix="DSC_", validate_assignment=True)
    else:

        class Config:
            env_prefix = "DSC_"
            validate_assignment = True

    @_field_validator("sensor")
    def _validate_sensor(cls, v: str) -> str:
        v2 = str(v).strip().lower()
        if v2 not in SENSOR_PRESETS:
            raise ValueError(f"sensor must be one of {'|'.join(sorted(SENSOR_PRESETS))}")
        return v2

    @_field_validator("num_cams")
    def _validate_num_cams(cls, v: int) -> int:
        if not 1 <= int(v) <= 12:
            raise ValueError("num_cams must be in [1, 12]")
        return int(v)

    @_field_validator("map_ipp")
    def _validate_map_ipp(cls, v: float) -> float:
        if float(v) <= 0.0:
            raise ValueError("map_ipp must be > 0")
        return float(v)

    @_field_validator("map_width", "map_height")
    def _validate_map_dims(cls, v: float) -> float:
        if float(v) <= 0.0:
            raise ValueError("map dimensions must be > 0")
        return float(v)

    @_field_validator("bg_hdes")
    def _validate_bg_hdes(cls, v: int) -> int:
        if int(v) <= 0:
            raise ValueError("bg_hdes must be >= 1")
        return int(v)

    @_field_validator("bg_force_mono")
    def _validate_bg_force_mono(cls, v: int) -> int:
        if not 0 <= int(v) <= 3:
            raise ValueError("bg_force_mono must be in [0, 3]")
        return int(v)


def settings_to_dict(settings: SceneSettings) -> dict[str, Any]:
    """Convert settings to a plain dict (supports Pydantic v1 and v2)."""

    if hasattr(settings, "model_dump"):
        return cast(dict[str, Any], settings.model_dump())
    return cast(dict[str, Any], settings.dict())


def _fields_set(obj: object) -> set[str]:
    """Return the set of fields explicitly provided/overridden on a Pydantic model."""

    fields_set = getattr(obj, "model_fields_set", None)
    if fields_set is not None:
        return set(fields_set)
    return set(getattr(obj, "__fields_set__", set()))


def _config_path() -> Path:
    """Return the YAML configuration path (defaults to config/depthscene.config.yml)."""

    return Path(os.getenv("DSC_CONFIG", "config/depthscene.config.yml"))


def load_settings() -> SceneSettings:
    """Load settings from YAML and environment variables.

    YAML provides defaults; environment variables override.
    """

    data: dict[str, Any] = {}
    path = _config_path()
    if path.exists():
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    env_settings = SceneSettings()
    env_overrides: dict[str, Any] = {
        name: getattr(env_settings, name) for name in _fields_set(env_settings)
    }

    merged = {**data, **env_overrides}
    return SceneSettings(**merged)


def sensor_from_settings(settings: SceneSettings) -> SensorPreset:
    """Return the depth sensor optics selected by `settings.sensor`."""

    return SENSOR_PRESETS[settings.sensor]
