"""
FastAPI layer exposing the cancer classifier.

Endpoints:
 - GET /
 - GET /health
 - POST /predict
 - GET /predict/histories
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from . import config
from .config import InferenceConfig
from .errors import StorageError
from .model_loader import build_model_cache
from .pipeline import PredictionService
from .repository import (
    InMemoryPredictionRepository,
    PredictionRecord,
    PredictionRepository,
    S3PredictionRepository,
    to_history,
)
from .storage import S3BlobStore

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

WELCOME_TEXT = "Welcome to ML Dicoding API"
INVALID_UPLOAD = "Invalid file upload"
NO_FILE = "No file uploaded"
PREDICTION_ERROR = "Terjadi kesalahan dalam melakukan prediksi"
PREDICTION_SUCCESS = "Model is predicted successfully"
NO_PREDICTIONS = "No predictions found"

# Room for boundaries and part headers; larger bodies cannot hold a valid upload.
MULTIPART_OVERHEAD_BYTES = 16 * 1024

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def _fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "fail", "message": message})


def build_repository(settings: config.Settings) -> PredictionRepository:
    if settings.prediction_store == "s3":
        bucket = settings.prediction_bucket or settings.artifact_bucket
        return S3PredictionRepository(S3BlobStore(settings), bucket, settings.prediction_prefix)
    return InMemoryPredictionRepository()


def create_app(
    service: Optional[PredictionService] = None,
    repository: Optional[PredictionRepository] = None,
    settings: Optional[config.Settings] = None,
) -> FastAPI:
    settings = settings or config.get_settings()
    if service is None:
        inference_config = InferenceConfig.from_settings(settings)
        service = PredictionService(
            build_model_cache(settings, inference_config),
            inference_config=inference_config,
        )
    if repository is None:
        repository = build_repository(settings)
    max_upload_bytes = settings.max_upload_bytes

    app = FastAPI(title="Cancer Classification Service", version="0.1.0")
    app.state.service = service
    app.state.repository = repository

    @app.middleware("http")
    async def add_cors_headers(request: Request, call_next):
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)
        for name, value in CORS_HEADERS.items():
            response.headers[name] = value
        return response

    @app.get("/", response_class=PlainTextResponse)
    def home():
        return WELCOME_TEXT

    @app.get("/health")
    def health():
        return {"status": "ok", "model": service.model_cache.state.value}

    @app.post("/predict")
    async def predict(request: Request):
        too_large = f"Payload content length greater than maximum allowed: {max_upload_bytes}"
        content_length = request.headers.get("content-length", "")
        if content_length.isdigit() and int(content_length) > max_upload_bytes + MULTIPART_OVERHEAD_BYTES:
            return _fail(413, too_large)

        try:
            form = await request.form()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not parse upload: %s", exc)
            return _fail(400, INVALID_UPLOAD)

        try:
            uploads = form.getlist("image")
            stray = [key for key, value in form.multi_items() if key != "image" and isinstance(value, UploadFile)]
            if stray or len(uploads) > 1:
                return _fail(400, INVALID_UPLOAD)
            if not uploads:
                return _fail(400, NO_FILE)

            upload = uploads[0]
            if not isinstance(upload, UploadFile):
                return _fail(400, INVALID_UPLOAD)
            if not (upload.content_type or "").startswith("image/"):
                return _fail(400, INVALID_UPLOAD)

            image_bytes = await upload.read(max_upload_bytes + 1)
            if len(image_bytes) > max_upload_bytes:
                return _fail(413, too_large)
        finally:
            await form.close()

        try:
            result = await run_in_threadpool(service.classify, image_bytes)
            record = PredictionRecord.create(result)
            await run_in_threadpool(repository.save, record)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Prediction error: %s", exc)
            return _fail(400, PREDICTION_ERROR)

        return JSONResponse(
            status_code=201,
            content={
                "status": "success",
                "message": PREDICTION_SUCCESS,
                "data": record.model_dump(),
            },
        )

    @app.get("/predict/histories")
    def histories():
        try:
            records = repository.list_all()
        except StorageError as exc:
            logger.exception("Error fetching history: %s", exc)
            return _fail(400, PREDICTION_ERROR)

        if not records:
            return _fail(404, NO_PREDICTIONS)
        return {"status": "success", "data": [to_history(r).model_dump() for r in records]}

    return app


app = create_app()


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
