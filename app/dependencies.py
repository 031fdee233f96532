"""FastAPI dependencies shared by the v1 routes."""

from typing import Annotated

from fastapi import Depends

from app.repositories.submission_repository import SubmissionStore, get_submission_store
from app.services.callback_ingestor import CallbackIngestor
from app.services.pipeline_orchestrator import PipelineOrchestrator
from app.services.pipeline_task_manager import PipelineTaskManager, get_pipeline_task_manager
from app.services.regeneration import RegenerationService
from app.services.retry_engine import RetryEngine
from app.services.submission_diagnostics import SubmissionDiagnostics


def get_store() -> SubmissionStore:
    return get_submission_store()


def get_task_manager() -> PipelineTaskManager:
    return get_pipeline_task_manager()


def get_orchestrator(store: Annotated[SubmissionStore, Depends(get_store)]) -> PipelineOrchestrator:
    return PipelineOrchestrator(store=store)


def get_retry_engine(
    store: Annotated[SubmissionStore, Depends(get_store)],
    orchestrator: Annotated[PipelineOrchestrator, Depends(get_orchestrator)],
) -> RetryEngine:
    return RetryEngine(store=store, orchestrator=orchestrator)


def get_regeneration_service(
    store: Annotated[SubmissionStore, Depends(get_store)],
    orchestrator: Annotated[PipelineOrchestrator, Depends(get_orchestrator)],
    task_manager: Annotated[PipelineTaskManager, Depends(get_task_manager)],
) -> RegenerationService:
    return RegenerationService(store=store, orchestrator=orchestrator, scheduler=task_manager)


def get_callback_ingestor(store: Annotated[SubmissionStore, Depends(get_store)]) -> CallbackIngestor:
    return CallbackIngestor(store=store)


def get_diagnostics(store: Annotated[SubmissionStore, Depends(get_store)]) -> SubmissionDiagnostics:
    return SubmissionDiagnostics(store=store)


Store = Annotated[SubmissionStore, Depends(get_store)]
TaskManager = Annotated[PipelineTaskManager, Depends(get_task_manager)]
Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]
Retry = Annotated[RetryEngine, Depends(get_retry_engine)]
Regeneration = Annotated[RegenerationService, Depends(get_regeneration_service)]
Callbacks = Annotated[CallbackIngestor, Depends(get_callback_ingestor)]
Diagnostics = Annotated[SubmissionDiagnostics, Depends(get_diagnostics)]
