"""Configuration management for the MVSRefine depth-map refinement stage."""

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)


class RefineConfig(BaseModel):
    """Configuration for refining one tile of a reference view.

    Attributes:
        scale: Image downscale factor the cameras are requested at.
        step_xy: Sampling stride in pixels (at ``scale``) between depth map pixels.
        half_nb_depths: Number of depth steps searched on each side of the
            input depth. The similarity volume has ``2 * half_nb_depths + 1``
            depth samples.
        window_size: Patch window size for similarity computation (pixels, odd).
        use_normal_map: Consume the upstream normal map when one is supplied.
        use_refine_fuse: Run the similarity volume refinement and fusion stage.
        use_color_optimization: Run the gradient-descent depth optimization stage.
        optimization_nb_iterations: Number of optimization iterations.
        optimization_step_size: Gradient-descent step size (fraction of the
            gradient applied per iteration).
        sim_sigmoid_center: Raw similarity at which the inverted score is 0.5.
        sim_sigmoid_width: Width of the similarity inversion sigmoid.
        variance_center: Image variance at which the texture confidence is 0.5.
        variance_width: Width of the texture confidence sigmoid.
        export_intermediate_depth_sim_maps: Export depth/sim maps at each stage.
        export_intermediate_cross_volumes: Export similarity volume cross-sections.
        export_intermediate_volume_9p_csv: Export similarity profiles at 9 points.
    """

    model_config = ConfigDict(extra="allow")

    # Sampling
    scale: int = Field(default=1, ge=1)
    step_xy: int = Field(default=1, ge=1)
    half_nb_depths: int = Field(default=15, ge=0)
    window_size: int = 7

    # Stages
    use_normal_map: bool = False
    use_refine_fuse: bool = True
    use_color_optimization: bool = True
    optimization_nb_iterations: int = Field(default=100, ge=0)
    optimization_step_size: float = Field(default=0.5, gt=0.0, le=1.0)

    # Scoring
    sim_sigmoid_center: float = -0.7
    sim_sigmoid_width: float = Field(default=0.7, gt=0.0)
    variance_center: float = 0.001
    variance_width: float = Field(default=0.001, gt=0.0)

    # Diagnostics
    export_intermediate_depth_sim_maps: bool = False
    export_intermediate_cross_volumes: bool = False
    export_intermediate_volume_9p_csv: bool = False

    @field_validator("window_size")
    @classmethod
    def validate_window_size(cls, v: int) -> int:
        """Validate that window_size is positive and odd."""
        if v <= 0 or v % 2 == 0:
            raise ValueError(f"window_size must be positive and odd, got {v}")
        return v

    @property
    def nb_depths(self) -> int:
        """Depth extent of the similarity volume."""
        return 2 * self.half_nb_depths + 1

    @property
    def downscale(self) -> int:
        """Combined downscale between full-resolution pixels and depth map pixels."""
        return self.scale * self.step_xy

    @property
    def exports_enabled(self) -> bool:
        """True if any intermediate export is requested."""
        return (
            self.export_intermediate_depth_sim_maps
            or self.export_intermediate_cross_volumes
            or self.export_intermediate_volume_9p_csv
        )

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "RefineConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in RefineConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class TileParamsConfig(BaseModel):
    """Tile buffer dimensions at full resolution.

    Attributes:
        buffer_width: Maximum tile width (pixels). Buffers are sized for it.
        buffer_height: Maximum tile height (pixels).
        padding: Overlap added on each side of a tile when the image is split.
    """

    model_config = ConfigDict(extra="allow")

    buffer_width: int = Field(default=1024, gt=0)
    buffer_height: int = Field(default=1024, gt=0)
    padding: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_padding(self) -> "TileParamsConfig":
        """Validate that padding leaves room for tile content."""
        if 2 * self.padding >= min(self.buffer_width, self.buffer_height):
            raise ValueError(
                f"padding {self.padding} is too large for a "
                f"{self.buffer_width}x{self.buffer_height} tile buffer"
            )
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in TileParamsConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class RuntimeConfig(BaseModel):
    """Configuration for runtime settings.

    Attributes:
        device: PyTorch device string.
        use_stream: Bind each engine to a dedicated CUDA stream (CUDA only).
        pitch_alignment: Row pitch alignment of device buffers (bytes).
        pyramid_levels: Number of image pyramid levels held per cached camera.
        quiet: Suppress progress output.
    """

    model_config = ConfigDict(extra="allow")

    device: Literal["cpu", "cuda"] = "cpu"
    use_stream: bool = True
    pitch_alignment: int = Field(default=512, gt=0)
    pyramid_levels: int = Field(default=3, ge=1)
    quiet: bool = False

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "RuntimeConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in RuntimeConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class RefinePipelineConfig(BaseModel):
    """Top-level configuration for refining the depth maps of a scene.

    Attributes:
        scene_path: Path to the scene JSON file (views and target cameras).
        depth_map_dir: Directory holding the coarse ``{view_id}.npz`` depth maps.
        output_dir: Directory for refined depth maps and diagnostics.
        refine: Refinement configuration.
        tiles: Tile buffer configuration.
        runtime: Runtime configuration.
    """

    model_config = ConfigDict(extra="allow")

    scene_path: str = ""
    depth_map_dir: str = ""
    output_dir: str = ""

    refine: RefineConfig = Field(default_factory=RefineConfig)
    tiles: TileParamsConfig = Field(default_factory=TileParamsConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @model_validator(mode="after")
    def check_cross_section_constraints(self) -> "RefinePipelineConfig":
        """Validate cross-section constraints and warn about extra fields."""
        if self.tiles.buffer_width < self.refine.downscale:
            raise ValueError(
                f"tiles.buffer_width ({self.tiles.buffer_width}) is smaller than "
                f"refine.scale * refine.step_xy ({self.refine.downscale})"
            )
        if self.tiles.buffer_height < self.refine.downscale:
            raise ValueError(
                f"tiles.buffer_height ({self.tiles.buffer_height}) is smaller than "
                f"refine.scale * refine.step_xy ({self.refine.downscale})"
            )

        if self.refine.exports_enabled and not self.output_dir:
            logger.warning(
                "Intermediate exports are enabled but output_dir is empty; "
                "files will be written to the current directory."
            )

        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in RefinePipelineConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )

        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RefinePipelineConfig":
        """Load configuration from a YAML file.

        Missing fields use their default values.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Loaded configuration with defaults filled in.

        Raises:
            FileNotFoundError: If the file does not exist.
            yaml.YAMLError: If the file is not valid YAML.
            ValueError: If validation fails (with all errors collected).
        """
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}

        cls._log_default_sections(data)

        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            formatted_errors = format_validation_errors(e)
            raise ValueError(
                f"Configuration validation failed:\n{formatted_errors}"
            ) from None

        return config

    @staticmethod
    def _log_default_sections(data: dict[str, Any]) -> None:
        """Log INFO messages about sections using defaults."""
        for section in ("refine", "tiles", "runtime"):
            if section not in data:
                logger.info("Using default: %s (all defaults)", section)

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file.

        All fields including defaults are written for explicitness.

        Args:
            path: Path to output YAML file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")

        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors with YAML-style paths.

    Args:
        error: Pydantic ValidationError.

    Returns:
        Formatted error string with YAML paths and messages.
    """
    lines = []
    for err in error.errors():
        loc = err["loc"]
        path_parts = []
        for part in loc:
            if isinstance(part, int):
                path_parts[-1] = f"{path_parts[-1]}[{part}]"
            else:
                path_parts.append(str(part))

        path = ".".join(path_parts)
        lines.append(f"  {path}: {err['msg']}")

    return "\n".join(lines)
