"""Question Ingestion FastAPI Application."""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, ValidationError

from question_ingest.backend_client import HierarchyAPIClient, QuestionAPIClient
from question_ingest.config import Config, setup_logging
from question_ingest.errors import ConfigurationError, DecodeError, InvalidTransitionError, UploadError
from question_ingest.image_pipeline.storage_uploader import ImageRecropper, StorageUploader, find_image
from question_ingest.llm_service import LLMService, create_provider
from question_ingest.orchestrator import IngestionPipeline, RunProgress, RunResult
from question_ingest.page_rasterizer import rasterize, with_source
from question_ingest.question_assembler import QuestionAssembler
from question_ingest.question_store import QuestionRemoved, QuestionStore, QuestionUpdated
from question_ingest.state import BoundingBox, PageImage, RunOptions
from question_ingest.upload_orchestrator import UploadOrchestrator

# Setup centralized logging
logger = setup_logging()
logger.info("=== Question Ingestion API Starting ===")


def llm_configured() -> bool:
    try:
        return Config.validate()
    except ConfigurationError:
        return False


if not llm_configured():
    logger.warning(f"No API key for LLM provider '{Config.LLM_PROVIDER}'; runs will be rejected until one is set")


class ServiceFactory:
    """Builds the external collaborators for a run."""

    def llm_service(self, options: RunOptions) -> LLMService:
        return LLMService(create_provider(options.provider, options.model))

    def hierarchy_client(self) -> HierarchyAPIClient:
        return HierarchyAPIClient()

    def question_client(self) -> QuestionAPIClient:
        return QuestionAPIClient()

    def storage_uploader(self) -> StorageUploader:
        return StorageUploader()


def get_service_factory() -> ServiceFactory:
    return ServiceFactory()


class IngestionRun:
    """Book-keeping for one run: its options, question store and background task."""

    def __init__(self, run_id: str, options: RunOptions, store: QuestionStore,
                 pages: Optional[List[PageImage]] = None):
        self.run_id = run_id
        self.options = options
        self.store = store
        # Question and solution rasters, numbered the way image regions are
        self.pages = pages or []
        self.status = "running"
        self.error: Optional[str] = None
        self.progress: Optional[RunProgress] = None
        self.result: Optional[RunResult] = None
        self.task: Optional[asyncio.Task] = None

    def page_for(self, page_number: int) -> Optional[PageImage]:
        return next((page for page in self.pages if page.page_number == page_number), None)

    def snapshot(self) -> Dict[str, Any]:
        result = self.result
        return {
            "run_id": self.run_id,
            "status": self.status,
            "error": self.error,
            "progress": self.progress.model_dump() if self.progress else None,
            "warnings": result.warnings if result else [],
            "failed_pages": result.failed_pages if result else [],
            "unresolved_fragment": result.unresolved_fragment.model_dump() if result and result.unresolved_fragment else None,
            "questions": [q.model_dump(mode="json") for q in self.store.snapshot],
        }


class RunResponse(BaseModel):
    run_id: str
    status: str
    page_count: int = 0


class UploadSummary(BaseModel):
    run_id: str
    counts: Dict[str, int]
    failed: List[Dict[str, Optional[str]]] = Field(default_factory=list)


app = FastAPI(title="Question Ingestion API")
app.state.runs = {}


def _get_run(request: Request, run_id: str) -> IngestionRun:
    run = request.app.state.runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return run


async def _execute(run: IngestionRun, pipeline: IngestionPipeline, pages, solution_pages) -> None:
    def on_progress(progress: RunProgress) -> None:
        run.progress = progress

    try:
        run.result = await pipeline.run_pages(pages, solution_pages, on_progress=on_progress)
        run.status = "completed"
        logger.info(f"Run {run.run_id} completed")
    except asyncio.CancelledError:
        run.status = "cancelled"
        logger.info(f"Run {run.run_id} cancelled")
        raise
    except Exception as e:
        run.status = "failed"
        run.error = str(e)
        logger.error(f"Run {run.run_id} failed: {e}", exc_info=True)


def _upload_orchestrator(run: IngestionRun, services: ServiceFactory) -> UploadOrchestrator:
    if run.status == "running":
        raise HTTPException(status_code=409, detail="Run is still extracting questions")
    return UploadOrchestrator(run.store, services.question_client(),
                              QuestionAssembler(run.options.upload_context()))


def _upload_summary(run: IngestionRun, orchestrator: UploadOrchestrator) -> UploadSummary:
    return UploadSummary(
        run_id=run.run_id,
        counts=orchestrator.summary(),
        failed=[{"id": q.id, "error": q.error} for q in orchestrator.failed_questions()],
    )


@app.get("/health")
async def health():
    return {"status": "ok", "llm_provider": Config.LLM_PROVIDER, "llm_configured": llm_configured()}


@app.post("/runs", response_model=RunResponse)
async def start_run(request: Request,
                    question_file: UploadFile = File(...),
                    solution_file: Optional[UploadFile] = File(None),
                    options: str = Form("{}"),
                    services: ServiceFactory = Depends(get_service_factory)):
    """Start an ingestion run over an uploaded PDF or image."""
    try:
        run_options = RunOptions.model_validate_json(options)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid run options: {e}")

    logger.info(f"Starting run for: {question_file.filename}")
    scale = run_options.raster_scale or Config.RASTER_SCALE
    try:
        llm_service = services.llm_service(run_options)
        pages = await run_in_threadpool(rasterize, await question_file.read(), scale)
        solution_pages = []
        if solution_file is not None:
            solution_pages = await run_in_threadpool(rasterize, await solution_file.read(), scale)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {str(e)}")
        raise HTTPException(status_code=503, detail=f"LLM service unavailable: {str(e)}")
    except DecodeError as e:
        logger.error(f"Decode error: {str(e)}")
        raise HTTPException(status_code=422, detail=f"Could not read uploaded file: {str(e)}")

    offset = len(pages) if solution_pages else 0
    all_pages = with_source(pages, "question") + with_source(solution_pages, "solution", page_offset=offset)
    run = IngestionRun(str(uuid.uuid4()), run_options, QuestionStore(), pages=all_pages)
    pipeline = IngestionPipeline(
        llm_service,
        services.hierarchy_client(),
        storage_uploader=services.storage_uploader(),
        store=run.store,
        options=run_options,
    )
    run.task = asyncio.create_task(_execute(run, pipeline, pages, solution_pages))
    request.app.state.runs[run.run_id] = run
    return RunResponse(run_id=run.run_id, status=run.status, page_count=len(pages))


@app.get("/runs/{run_id}")
async def get_run(run_id: str, request: Request):
    return _get_run(request, run_id).snapshot()


@app.delete("/runs/{run_id}", response_model=RunResponse)
async def cancel_run(run_id: str, request: Request):
    """Cancel a run that is still extracting."""
    run = _get_run(request, run_id)
    if run.task is not None and not run.task.done():
        run.task.cancel()
        try:
            await run.task
        except asyncio.CancelledError:
            pass
    return RunResponse(run_id=run.run_id, status=run.status)


@app.delete("/runs/{run_id}/questions/{question_id}")
async def remove_question(run_id: str, question_id: str, request: Request):
    run = _get_run(request, run_id)
    if run.store.get(question_id) is None:
        raise HTTPException(status_code=404, detail=f"Question not found: {question_id}")
    await run.store.dispatch(QuestionRemoved(question_id=question_id))
    return {"run_id": run_id, "removed": question_id}


@app.post("/runs/{run_id}/questions/{question_id}/images/{file_name}/recrop")
async def recrop_image(run_id: str, question_id: str, file_name: str, bounding_box: BoundingBox,
                       request: Request, services: ServiceFactory = Depends(get_service_factory)):
    """Re-crop one diagram with a corrected box and swap its URL throughout the question."""
    run = _get_run(request, run_id)
    question = run.store.get(question_id)
    if question is None:
        raise HTTPException(status_code=404, detail=f"Question not found: {question_id}")
    image = find_image(question, file_name)
    if image is None:
        raise HTTPException(status_code=404, detail=f"Image not found: {file_name}")
    page = run.page_for(image.region.page_number)
    if page is None:
        raise HTTPException(status_code=404, detail=f"Page {image.region.page_number} is not available")

    try:
        updated, _ = await ImageRecropper(services.storage_uploader()).recrop(question, image, page, bounding_box)
    except UploadError as e:
        logger.error(f"Re-crop failed for {file_name}: {e}")
        raise HTTPException(status_code=502, detail=f"Image upload failed: {e}")

    await run.store.dispatch(QuestionUpdated(question=updated))
    current = run.store.get(question_id)
    if current is None:
        raise HTTPException(status_code=404, detail=f"Question not found: {question_id}")
    return current.model_dump(mode="json")


@app.post("/runs/{run_id}/upload", response_model=UploadSummary)
async def upload_run(run_id: str, request: Request, services: ServiceFactory = Depends(get_service_factory)):
    run = _get_run(request, run_id)
    orchestrator = _upload_orchestrator(run, services)
    await orchestrator.upload_all()
    return _upload_summary(run, orchestrator)


@app.post("/runs/{run_id}/retry-failed", response_model=UploadSummary)
async def retry_failed(run_id: str, request: Request, services: ServiceFactory = Depends(get_service_factory)):
    run = _get_run(request, run_id)
    orchestrator = _upload_orchestrator(run, services)
    await orchestrator.retry_failed()
    return _upload_summary(run, orchestrator)


@app.post("/runs/{run_id}/questions/{question_id}/retry")
async def retry_question(run_id: str, question_id: str, request: Request,
                         services: ServiceFactory = Depends(get_service_factory)):
    run = _get_run(request, run_id)
    orchestrator = _upload_orchestrator(run, services)
    try:
        question = await orchestrator.retry(question_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Question not found: {question_id}")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return question.model_dump(mode="json")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
