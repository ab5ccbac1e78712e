# =============================================================================
# Embedding Lens - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing all tunable parameters for
# both the lens orchestrator and the encoder runtime process. Parameters are
# overridable via environment variables with the LENS_ prefix
# (e.g., LENS_INFERENCE_INTERVAL_SECONDS=2.0).
# =============================================================================

import os
from dataclasses import dataclass, field
from typing import Optional

import torch


def _detect_device() -> str:
    """
    Auto-detect the best available compute device.

    Returns:
        str: "mps" on Apple Silicon, "cuda" on NVIDIA GPUs, "cpu" as fallback.
    """
    if torch.backends.mps.is_available():
        return "mps"
    elif torch.cuda.is_available():
        return "cuda"
    return "cpu"


def _resolve_dtype(dtype_str: str) -> torch.dtype:
    """
    Convert a string dtype name to a torch.dtype.

    Args:
        dtype_str: One of "float16", "float32", "bfloat16".

    Returns:
        The corresponding torch.dtype.
    """
    dtype_map = {
        "float16": torch.float16,
        "float32": torch.float32,
        "bfloat16": torch.bfloat16,
    }
    return dtype_map.get(dtype_str, torch.float32)


def _parse_bool(value: str) -> bool:
    """Interpret common truthy strings from the environment."""
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """
    Centralized configuration for the Embedding Lens system.

    All fields can be overridden via environment variables prefixed with LENS_.
    """

    # -- Encoder Runtime (CLIP) --
    model_id: str = "openai/clip-vit-base-patch16"
    embedding_dim: int = 512
    text_cache_size: int = 50

    # -- Queries --
    max_queries: int = 12

    # -- Inference loop --
    inference_size: int = 224
    inference_initial_delay_seconds: float = 0.6
    inference_interval_seconds: float = 1.5
    inference_guard: bool = True  # skip a tick while the previous frame is in flight
    inference_errors_fatal: bool = False

    # -- Segmentation --
    segmentation_interval_seconds: float = 0.15
    grid_cols: int = 32
    grid_rows: int = 16
    ml_segmentation: bool = True
    segmentation_model_selection: int = 1  # 0 = general, 1 = landscape

    # -- Camera --
    camera_index: int = 0
    camera_width: int = 640
    camera_height: int = 480

    # -- Rendering-layer API --
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # -- Compute --
    device: str = field(default_factory=_detect_device)
    torch_dtype_str: str = "float32"

    # -- Derived (computed post-init) --
    torch_dtype: torch.dtype = field(init=False)

    def __post_init__(self):
        """Apply environment variable overrides and compute derived fields."""
        self._apply_env_overrides()
        self.torch_dtype = _resolve_dtype(self.torch_dtype_str)

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for LENS_<FIELD_NAME_UPPERCASE> environment variables and
        applies them with appropriate type conversion.
        """
        field_types = {
            "model_id": str,
            "embedding_dim": int,
            "text_cache_size": int,
            "max_queries": int,
            "inference_size": int,
            "inference_initial_delay_seconds": float,
            "inference_interval_seconds": float,
            "inference_guard": _parse_bool,
            "inference_errors_fatal": _parse_bool,
            "segmentation_interval_seconds": float,
            "grid_cols": int,
            "grid_rows": int,
            "ml_segmentation": _parse_bool,
            "segmentation_model_selection": int,
            "camera_index": int,
            "camera_width": int,
            "camera_height": int,
            "api_host": str,
            "api_port": int,
            "device": str,
            "torch_dtype_str": str,
        }
        for field_name, field_type in field_types.items():
            env_key = f"LENS_{field_name.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))

    @property
    def grid_cells(self) -> int:
        """Number of cells in the segmentation grid."""
        return self.grid_cols * self.grid_rows


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
