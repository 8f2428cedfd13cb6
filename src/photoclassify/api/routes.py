"""API route definitions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from photoclassify.api.middleware import (
    get_app_settings,
    get_classifier,
    get_inference_pool,
    get_model_manager,
    verify_api_key,
)
from photoclassify.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from photoclassify.ml.image_classifier import NoResultError, ServiceFailureError
from photoclassify.ml.model_manager import MODEL_REGISTRY
from photoclassify.ml.preprocessing import PreprocessError, decode_image
from photoclassify.pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Crop, resize, and classify an uploaded photo; return the displayed tags."""
    settings = get_app_settings(request)
    classifier = get_classifier(request)

    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    pipeline = ClassificationPipeline(
        classifier,
        get_inference_pool(request),
        target_size=settings.target_size,
        display_limit=settings.display_limit,
        display_threshold=settings.display_threshold,
    )
    try:
        image = decode_image(data, settings.max_image_pixels)
        await pipeline.classify(image)
    except (PreprocessError, NoResultError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ServiceFailureError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Classification queue is full, retry later",
        ) from exc

    return ClassifyImageResponse(
        model=classifier.model_name,
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in pipeline.displayed_results],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_app_settings(request)
    pool = get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered classification models, marking the configured one active."""
    active = get_app_settings(request).classification_model
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                input_size=spec.input_size,
                status="active" if spec.name == active else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
