# =============================================================================
# Embedding Lens - Foreground Segmentation
# =============================================================================
# Two interchangeable strategies that turn a camera frame into a per-cell
# foreground (person) confidence mask on a mirrored 32x16 grid:
#
#   - BrightnessSegmenter: dependency-free heuristic; a person silhouetted
#     against a lit background is usually darker than the background.
#   - SelfieSegmenter: MediaPipe selfie segmentation, loaded asynchronously.
#
# SegmentationEngine owns the current mask and the authoritative strategy.
# Promotion to the model strategy is one-way: after it, brightness output is
# never used again, and a failed model sample just leaves the mask stale.
# =============================================================================

import logging
from abc import ABC, abstractmethod
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def downsample_to_grid(image: np.ndarray, cols: int, rows: int, mirror: bool = True) -> np.ndarray:
    """
    Area-resize an image to ``cols x rows`` cells, mirrored for a front camera.

    Args:
        image:  (H, W) or (H, W, C) array.
        cols:   Grid width in cells.
        rows:   Grid height in cells.
        mirror: Flip horizontally so the grid matches what the user sees.

    Returns:
        (rows, cols[, C]) array.
    """
    small = cv2.resize(image, (cols, rows), interpolation=cv2.INTER_AREA)
    if mirror:
        small = small[:, ::-1]
    return small


def brightness_mask(luminance: np.ndarray) -> np.ndarray:
    """
    Foreground confidence from per-cell luminance in [0, 1].

    Cells darker than ``p30 + 0.6 * (p70 - p30)`` get a confidence between
    0.4 and 1.0 that grows with how far below the threshold they are; all
    other cells get 0. A uniform frame has zero spread, so the threshold
    equals every cell and the mask is all zeros.
    """
    lum = np.asarray(luminance, dtype=np.float32).reshape(-1)
    n = lum.size
    ordered = np.sort(lum)
    p30 = ordered[int(n * 0.3)]
    p70 = ordered[int(n * 0.7)]
    spread = p70 - p30
    threshold = p30 + spread * 0.6

    mask = np.zeros(n, dtype=np.float32)
    below = lum < threshold
    mask[below] = 0.4 + np.minimum(1.0, (threshold - lum[below]) / (spread + 0.08)) * 0.6
    return mask


class SegmentationStrategy(ABC):
    """A way of turning a BGR frame into a flat mask of grid-cell confidences."""

    name = "unknown"

    @abstractmethod
    def sample(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Return a float32 mask of ``cols * rows`` values in [0, 1], or None."""

    def close(self) -> None:
        """Release any model resources."""


class BrightnessSegmenter(SegmentationStrategy):
    """Luminance-percentile heuristic; always available."""

    name = "brightness"

    def __init__(self, cols: int = 32, rows: int = 16):
        self._cols = cols
        self._rows = rows

    def sample(self, frame: np.ndarray) -> Optional[np.ndarray]:
        grid = downsample_to_grid(frame, self._cols, self._rows).astype(np.float32)
        if grid.ndim == 2:
            luminance = grid / 255.0
        else:
            luminance = grid[:, :, :3].sum(axis=2) / 765.0
        return brightness_mask(luminance)


class SelfieSegmenter(SegmentationStrategy):
    """
    MediaPipe selfie segmentation downsampled to the grid.

    Args:
        segmenter: An object whose ``process(rgb)`` returns results with a
                   ``segmentation_mask`` (H, W) float array, as MediaPipe's
                   SelfieSegmentation does.
        cols:      Grid width in cells.
        rows:      Grid height in cells.
    """

    name = "mediapipe"

    def __init__(self, segmenter, cols: int = 32, rows: int = 16):
        self._segmenter = segmenter
        self._cols = cols
        self._rows = rows

    @classmethod
    def create(cls, model_selection: int = 1, cols: int = 32, rows: int = 16) -> "SelfieSegmenter":
        """
        Load the MediaPipe selfie segmentation model.

        Raises:
            ImportError: If mediapipe is not installed.
        """
        import mediapipe as mp

        logger.info("Loading MediaPipe selfie segmentation (model_selection=%d)", model_selection)
        segmenter = mp.solutions.selfie_segmentation.SelfieSegmentation(
            model_selection=model_selection
        )
        return cls(segmenter, cols=cols, rows=rows)

    def sample(self, frame: np.ndarray) -> Optional[np.ndarray]:
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        results = self._segmenter.process(rgb)
        confidence = getattr(results, "segmentation_mask", None)
        if confidence is None:
            return None
        grid = downsample_to_grid(np.asarray(confidence, dtype=np.float32), self._cols, self._rows)
        return np.clip(grid.reshape(-1), 0.0, 1.0).astype(np.float32)

    def close(self) -> None:
        self._segmenter.close()


class SegmentationEngine:
    """
    Holds the current mask and the authoritative segmentation strategy.

    Args:
        fallback: Strategy used until a model strategy is promoted.
        cells:    Number of grid cells (mask length).
    """

    def __init__(self, fallback: SegmentationStrategy, cells: int = 512):
        self._strategy = fallback
        self._promoted = False
        self._mask = np.zeros(cells, dtype=np.float32)
        self.samples = 0
        self.failures = 0

    @property
    def mode(self) -> str:
        return self._strategy.name

    @property
    def promoted(self) -> bool:
        return self._promoted

    @property
    def mask(self) -> np.ndarray:
        """The latest mask; replaced wholesale, never mutated in place."""
        return self._mask

    def promote(self, strategy: SegmentationStrategy) -> bool:
        """
        Make ``strategy`` authoritative for the rest of the session.

        Returns:
            False if a model strategy was already promoted.
        """
        if self._promoted:
            logger.warning("Segmentation already promoted to %s; ignoring %s", self.mode, strategy.name)
            return False
        previous = self._strategy
        self._strategy = strategy
        self._promoted = True
        logger.info("Segmentation switched from %s to %s", previous.name, strategy.name)
        return True

    def sample(self, frame: np.ndarray) -> bool:
        """
        Run the authoritative strategy on one frame.

        Returns:
            True if the mask was replaced. Failures are logged and skipped.
        """
        strategy = self._strategy
        try:
            mask = strategy.sample(frame)
        except Exception as exc:
            self.failures += 1
            logger.debug("Segmentation sample (%s) failed: %s", strategy.name, exc)
            return False

        if mask is None:
            self.failures += 1
            return False

        # A promotion can land while a sample runs in a worker thread
        if strategy is not self._strategy:
            return False

        self._mask = mask
        self.samples += 1
        return True

    def close(self) -> None:
        self._strategy.close()
