"""
Configuration models (YAML)

@requires: Optional YAML file whose top-level keys match FaceMeshConfig
@returns: Validated FaceMeshConfig
@errors: ConfigError
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..exceptions import ConfigError
from ..types import MIN_DETECTION_SCORE, MIN_SUPPRESSION_THRESHOLD, DetectionModelVariant

ColorOrder = Literal["bgr", "rgb"]


class SegmentationModelVariant(str, Enum):
    """Supported selfie segmentation heads."""

    GENERAL = "general"
    LANDSCAPE = "landscape"
    MULTICLASS = "multiclass"


class ResizeStrategy(str, Enum):
    STRETCH = "stretch"
    LETTERBOX = "letterbox"


class SegmentationConfig(BaseModel):
    """Selfie segmentation settings."""

    model: SegmentationModelVariant = SegmentationModelVariant.GENERAL
    resize_strategy: ResizeStrategy = ResizeStrategy.LETTERBOX
    max_output_size: int = Field(default=0, ge=0)
    validate_model: bool = True
    input_color_order: ColorOrder = "bgr"


class DetectionSettings(BaseModel):
    """Face detector stage settings."""

    variant: DetectionModelVariant = DetectionModelVariant.BACK_CAMERA
    min_score: float = Field(default=MIN_DETECTION_SCORE, ge=0.0, le=1.0)
    nms_threshold: float = Field(default=MIN_SUPPRESSION_THRESHOLD, ge=0.0, le=1.0)


class BackendSettings(BaseModel):
    """Model execution settings shared by every stage."""

    runtime: str = "onnxrt"
    device: str | None = None
    providers: list[str] | None = None
    intra_op_threads: int | None = Field(default=None, ge=1)

    def engine_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.providers:
            options["providers"] = list(self.providers)
        if self.device:
            options["device_preference"] = self.device
        if self.intra_op_threads:
            options["intra_op_threads"] = self.intra_op_threads
        return options


class FaceMeshConfig(BaseModel):
    """Top-level configuration for the face pipeline and segmentation."""

    model_dir: Path = Path("models")
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    mesh_pool_size: int = Field(default=3, ge=1)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    segmentation: SegmentationConfig = Field(default_factory=SegmentationConfig)
    input_color_order: ColorOrder = "bgr"

    @classmethod
    def from_yaml(cls, path: str | Path) -> FaceMeshConfig:
        """Load and validate a YAML configuration file.

        Relative ``model_dir`` values are resolved against the file's directory.

        Raises:
            ConfigError: If the file is missing, is not valid YAML, or does not
                match the schema.
        """
        config_path = Path(path).expanduser()
        if not config_path.is_file():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"Configuration root must be a mapping, got {type(data).__name__}"
            )

        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

        if not config.model_dir.is_absolute():
            config = config.model_copy(
                update={"model_dir": (config_path.parent / config.model_dir).resolve()}
            )
        return config
