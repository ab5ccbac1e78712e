# =============================================================================
# Embedding Lens - Vision Tower Encoder
# =============================================================================
# Provides the VisionEncoder class that loads the CLIP image processor and
# vision model (with projection head) from HuggingFace, turns raw RGBA frames
# into PIL images, and returns L2-normalized image embeddings.
#
# Loading is split in two stages (processor, model) so the runtime can report
# progress between them.
# =============================================================================

import logging

import numpy as np
import torch
from PIL import Image
from transformers import CLIPImageProcessor, CLIPVisionModelWithProjection

from shared.errors import InferenceFailure
from shared.scoring import l2_normalize

logger = logging.getLogger(__name__)


def rgba_to_image(image_data: bytes, width: int, height: int) -> Image.Image:
    """
    Wrap a raw RGBA buffer as a PIL RGB image.

    Args:
        image_data: Row-major RGBA bytes, ``width * height * 4`` long.
        width:      Frame width in pixels.
        height:     Frame height in pixels.

    Raises:
        InferenceFailure: If the buffer length does not match the dimensions.
    """
    expected = width * height * 4
    if len(image_data) != expected:
        raise InferenceFailure(
            f"Image buffer has {len(image_data)} bytes, expected {expected} "
            f"for {width}x{height} RGBA"
        )
    rgba = np.frombuffer(image_data, dtype=np.uint8).reshape(height, width, 4)
    # Alpha carries nothing for a camera frame
    return Image.fromarray(np.ascontiguousarray(rgba[:, :, :3]), mode="RGB")


class VisionEncoder:
    """
    CLIP vision tower producing projected image embeddings.

    Args:
        model_id: HuggingFace model identifier (e.g., "openai/clip-vit-base-patch16").
        device:   Compute device string ("mps", "cuda", or "cpu").
        dtype:    Torch dtype for model weights.
    """

    def __init__(self, model_id: str, device: str, dtype: torch.dtype):
        self._model_id = model_id
        self._device = device
        self._dtype = dtype
        self._processor = None
        self._model = None

    def load_processor(self) -> None:
        """Load the image processor (resize, center-crop, normalize)."""
        logger.info("Loading image processor: %s", self._model_id)
        self._processor = CLIPImageProcessor.from_pretrained(self._model_id)

    def load_model(self) -> None:
        """Load the vision tower with its projection head."""
        logger.info(
            "Loading vision model: %s (device=%s, dtype=%s)",
            self._model_id, self._device, self._dtype,
        )
        self._model = CLIPVisionModelWithProjection.from_pretrained(
            self._model_id, torch_dtype=self._dtype
        ).to(self._device)
        self._model.eval()

    @property
    def is_ready(self) -> bool:
        return self._processor is not None and self._model is not None

    @torch.no_grad()
    def _forward(self, image: Image.Image) -> np.ndarray:
        """Run the processor and vision tower, returning the raw projection."""
        inputs = self._processor(images=image, return_tensors="pt")
        pixel_values = inputs["pixel_values"].to(self._device, dtype=self._dtype)
        outputs = self._model(pixel_values=pixel_values)
        return outputs.image_embeds[0].float().cpu().numpy()

    def encode(self, image_data: bytes, width: int, height: int) -> np.ndarray:
        """
        Encode one RGBA frame into a normalized image embedding.

        Args:
            image_data: Row-major RGBA bytes.
            width:      Frame width in pixels.
            height:     Frame height in pixels.

        Returns:
            float32 array of shape (512,) with unit norm.

        Raises:
            InferenceFailure: If the encoder is not loaded or the buffer is invalid.
        """
        if not self.is_ready:
            raise InferenceFailure("Vision encoder is not loaded")

        image = rgba_to_image(image_data, width, height)
        embedding = l2_normalize(self._forward(image))

        logger.debug("Encoded %dx%d frame -> embedding dim=%d", width, height, embedding.shape[0])
        return embedding
