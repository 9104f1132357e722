"""
Scoring and thresholded decision on top of the cached model.
"""

from __future__ import annotations

from enum import Enum
import logging
import math
from typing import Optional

import torch

from .config import InferenceConfig
from .errors import InferenceError

logger = logging.getLogger(__name__)


class Diagnosis(str, Enum):
    CANCER = "Cancer"
    NON_CANCER = "Non-cancer"


class InferenceEngine:
    def __init__(self, inference_config: Optional[InferenceConfig] = None):
        self.config = inference_config or InferenceConfig()

    def score(self, tensor: torch.Tensor, model: torch.nn.Module) -> float:
        """Run the model and return the first value of its output."""
        try:
            with torch.no_grad():
                output = model(tensor)
        except Exception as exc:  # noqa: BLE001
            raise InferenceError(f"Model rejected input of shape {tuple(tensor.shape)}: {exc}") from exc

        if isinstance(output, (tuple, list)):
            output = output[0] if output else None
        if not isinstance(output, torch.Tensor) or output.numel() == 0:
            raise InferenceError("Model returned no scores")

        value = float(output.detach().reshape(-1)[0].cpu())
        if math.isnan(value):
            raise InferenceError("Model returned NaN")
        logger.debug("Model score: %s", value)
        return value

    def decide(self, score: float) -> Diagnosis:
        # Strictly greater: a score equal to the threshold is Non-cancer.
        return Diagnosis.CANCER if score > self.config.threshold else Diagnosis.NON_CANCER
