"""
Image loading and preprocessing.

Uploads are decoded to RGB, resized to the model input size with Pillow's
bilinear filter, scaled by the normalization divisor into [0, 1], and given a
leading batch dimension (NHWC layout, `[1, height, width, 3]`).
"""

from __future__ import annotations

from io import BytesIO
from typing import Optional

import numpy as np
from PIL import Image, UnidentifiedImageError
import torch

from .config import InferenceConfig
from .errors import UnsupportedImageFormat


class Preprocessor:
    def __init__(self, inference_config: Optional[InferenceConfig] = None, device: Optional[torch.device] = None):
        self.config = inference_config or InferenceConfig()
        self.device = device or torch.device("cpu")

    def decode(self, image_bytes: bytes) -> Image.Image:
        if not image_bytes:
            raise UnsupportedImageFormat("Empty image payload")
        try:
            image = Image.open(BytesIO(image_bytes))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise UnsupportedImageFormat("Invalid image data") from exc
        return image.convert("RGB")

    def normalize(self, image_bytes: bytes) -> torch.Tensor:
        """Decode `image_bytes` into a `[1, H, W, 3]` float32 tensor in [0, 1]."""
        image = self.decode(image_bytes)
        height, width = self.config.input_size
        if image.size != (width, height):
            image = image.resize((width, height), Image.BILINEAR)

        im_np = np.asarray(image, dtype=np.float32) / np.float32(self.config.normalization_divisor)
        im_np = np.clip(im_np, 0.0, 1.0)
        # Own a contiguous copy so no two requests ever share a buffer.
        return torch.from_numpy(np.ascontiguousarray(im_np)).unsqueeze(0).to(self.device)
