"""
High-level prediction pipeline.

`PredictionService.classify` is the main entry point used by both the HTTP
API and the local test script. It keeps orchestration simple:
bytes in -> preprocessing -> cached model -> score -> label + suggestion out.
Persisting the result is left to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, Optional

from .config import InferenceConfig
from .errors import CancerServiceError, PredictionFailed
from .inference import Diagnosis, InferenceEngine
from .model_loader import ModelCache
from .preprocessing import Preprocessor

logger = logging.getLogger(__name__)

SUGGESTIONS: Dict[Diagnosis, str] = {
    Diagnosis.CANCER: "Segera periksa ke dokter!",
    Diagnosis.NON_CANCER: "Penyakit kanker tidak terdeteksi.",
}


@dataclass(frozen=True)
class PredictionResult:
    label: Diagnosis
    suggestion: str
    score: float


class PredictionService:
    def __init__(
        self,
        model_cache: ModelCache,
        preprocessor: Optional[Preprocessor] = None,
        engine: Optional[InferenceEngine] = None,
        inference_config: Optional[InferenceConfig] = None,
    ):
        inference_config = inference_config or InferenceConfig()
        self.model_cache = model_cache
        self.preprocessor = preprocessor or Preprocessor(inference_config, device=model_cache.device)
        self.engine = engine or InferenceEngine(inference_config)

    def classify(self, image_bytes: bytes) -> PredictionResult:
        """
        Full pipeline from raw upload bytes to a labelled result.

        Raises:
            PredictionFailed: when any stage fails; the cause is chained.
        """
        stage = "preprocessing"
        try:
            tensor = self.preprocessor.normalize(image_bytes)
            stage = "model loading"
            model = self.model_cache.get()
            stage = "inference"
            score = self.engine.score(tensor, model)
        except CancerServiceError as exc:
            raise PredictionFailed(stage, f"Prediction failed during {stage}: {exc}") from exc

        label = self.engine.decide(score)
        logger.info("Prediction score=%.6f label=%s", score, label.value)
        return PredictionResult(label=label, suggestion=SUGGESTIONS[label], score=score)
