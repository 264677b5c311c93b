from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, File, Form, UploadFile
from pydantic import BaseModel, Field

from studygraph.api.v1.errors import ERROR_RESPONSES, ApiError
from studygraph.application.use_cases.generate_subject_graph_use_case import (
    GenerateSubjectGraphCommand,
)
from studygraph.core.dependencies import ContainerDep
from studygraph.domain.documents import DocumentSource
from studygraph.domain.exceptions import InputValidationError
from studygraph.infrastructure.container import GenerationContainer
from studygraph.infrastructure.state_management.generation_registry import (
    GenerationHandle,
    GenerationInProgressError,
)

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/subjects", tags=["subjects"])

_GENERIC_MEDIA_TYPES = {"", "application/octet-stream"}


class GenerationAcceptedResponse(BaseModel):
    subject_id: str
    generation_id: str
    status: str = Field(default="processing", examples=["processing"])


class GenerationCancelResponse(BaseModel):
    subject_id: str
    generation_id: str
    status: str = Field(default="cancel_requested", examples=["cancel_requested"])


async def _build_document(file: Optional[UploadFile], text: Optional[str]) -> DocumentSource:
    try:
        if file is not None:
            data = await file.read()
            media_type = str(file.content_type or "").strip()
            return DocumentSource.from_file(
                file.filename or "",
                data,
                None if media_type in _GENERIC_MEDIA_TYPES else media_type,
            )
        if text is not None:
            return DocumentSource.from_text(text)
    except InputValidationError as exc:
        raise ApiError(400, "INPUT_VALIDATION_FAILED", exc.user_message) from exc
    raise ApiError(400, "INPUT_VALIDATION_FAILED", "Send either a file or a text field.")


async def _run_generation(
    container: GenerationContainer, handle: GenerationHandle, document: DocumentSource
) -> None:
    try:
        outcome = await container.generate_subject_graph_use_case.execute(
            GenerateSubjectGraphCommand(
                subject_id=handle.subject_id,
                document=document,
                progress=handle,
                cancel_token=handle.token,
                generation_id=handle.generation_id,
            )
        )
        logger.info(
            "background_generation_finished",
            subject_id=handle.subject_id,
            generation_id=handle.generation_id,
            state=outcome.state.value,
        )
    finally:
        await container.generation_registry.finish(handle)


@router.post(
    "/{subject_id}/graph",
    status_code=202,
    response_model=GenerationAcceptedResponse,
    responses={code: ERROR_RESPONSES[code] for code in (400, 409, 422)},
)
async def generate_subject_graph(
    subject_id: str,
    background_tasks: BackgroundTasks,
    container: ContainerDep,
    file: Optional[UploadFile] = File(default=None),
    text: Optional[str] = Form(default=None),
) -> GenerationAcceptedResponse:
    document = await _build_document(file, text)
    try:
        handle = await container.generation_registry.start(subject_id)
    except GenerationInProgressError as exc:
        raise ApiError(
            409,
            "GENERATION_IN_PROGRESS",
            "A generation is already running for this subject",
            details={"generation_id": exc.generation_id},
        ) from exc

    logger.info("generation_accepted", subject_id=subject_id, generation_id=handle.generation_id, **document.describe())
    background_tasks.add_task(_run_generation, container, handle, document)
    return GenerationAcceptedResponse(subject_id=subject_id, generation_id=handle.generation_id)


@router.get(
    "/{subject_id}",
    responses={404: ERROR_RESPONSES[404]},
)
async def get_subject(subject_id: str, container: ContainerDep) -> Dict[str, Any]:
    document = await container.subject_repository.get(subject_id)
    handle = await container.generation_registry.get(subject_id)
    if document is None and handle is None:
        raise ApiError(404, "SUBJECT_NOT_FOUND", "Subject not found", details={"subject_id": subject_id})

    payload: Dict[str, Any] = document or {"id": subject_id, "status": "processing"}
    payload["generation"] = handle.snapshot() if handle is not None else None
    return payload


@router.delete(
    "/{subject_id}/graph/generation",
    status_code=202,
    response_model=GenerationCancelResponse,
    responses={404: ERROR_RESPONSES[404]},
)
async def cancel_subject_generation(subject_id: str, container: ContainerDep) -> GenerationCancelResponse:
    handle = await container.generation_registry.get(subject_id)
    if handle is None or not await container.generation_registry.cancel(subject_id):
        raise ApiError(
            404,
            "GENERATION_NOT_FOUND",
            "No generation is running for this subject",
            details={"subject_id": subject_id},
        )
    return GenerationCancelResponse(subject_id=subject_id, generation_id=handle.generation_id)
