"""FastAPI application wiring for the assessment service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: code that runs once at startup (migrations, recovery) and once at
  shutdown (draining background workers).
- app.state: a place to store shared runtime objects (storage, managers, workers).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse

from .app.assessment import AssessmentClient, HeuristicAssessmentClient, LLMAssessmentClient
from .app.errors import AssessmentApiError
from .app.hashing import asset_hash
from .app.lifecycle import TaskLifecycleManager
from .app.llm import build_llm_adapter
from .app.models import (
    CreateTaskRequest,
    GenerateReportResponse,
    Pagination,
    PaymentRequest,
    PaymentResponse,
    ReportStatusView,
    Submission,
    SubmitQuestionnaireResponse,
    TaskCreatedResponse,
    TaskListResponse,
    TaskSnapshot,
    TaskStatus,
)
from .app.orchestrator import AssessmentOrchestrator
from .app.payment import PaymentGate
from .app.recovery import RecoverySweeper
from .app.renderer import HtmlReportRenderer, ReportRenderer
from .app.reports import ReportLifecycleManager
from .app.storage.base import TaskStorage
from .app.storage.postgres import PostgresTaskStorage
from .app.workers import WorkerPool
from .config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: TaskStorage
    workers: WorkerPool
    lifecycle: TaskLifecycleManager
    orchestrator: AssessmentOrchestrator
    reports: ReportLifecycleManager
    payments: PaymentGate
    recovery: RecoverySweeper


def build_services(
    settings: Settings,
    *,
    storage: TaskStorage | None = None,
    assessment_client: AssessmentClient | None = None,
    renderer: ReportRenderer | None = None,
) -> Services:
    if storage is None:
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set ASSESSMENT_API_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        storage = PostgresTaskStorage(database_url)

    llm_adapter = build_llm_adapter(settings)
    needs_adapter = (settings.assessment_mode == "llm" and assessment_client is None) or (
        settings.report_mode == "llm" and renderer is None
    )
    if needs_adapter and llm_adapter is None:
        raise RuntimeError(
            "LLM mode requested but no adapter is configured. "
            "Set OPENAI_API_KEY and ASSESSMENT_API_LLM_PROVIDER=openai."
        )
    if assessment_client is None:
        if settings.assessment_mode == "llm":
            assessment_client = LLMAssessmentClient(
                llm_adapter=llm_adapter, timeout_s=settings.assessment_timeout_s
            )
        else:
            assessment_client = HeuristicAssessmentClient()
    if renderer is None:
        renderer = HtmlReportRenderer(
            llm_adapter=llm_adapter if settings.report_mode == "llm" else None,
            timeout_s=settings.report_timeout_s,
        )

    workers = WorkerPool(max_workers=settings.worker_count)
    lifecycle = TaskLifecycleManager(storage)
    reports = ReportLifecycleManager(
        lifecycle=lifecycle,
        renderer=renderer,
        workers=workers,
        timeout_s=settings.report_timeout_s,
    )
    return Services(
        settings=settings,
        storage=storage,
        workers=workers,
        lifecycle=lifecycle,
        orchestrator=AssessmentOrchestrator(
            lifecycle=lifecycle,
            client=assessment_client,
            workers=workers,
            timeout_s=settings.assessment_timeout_s,
        ),
        reports=reports,
        payments=PaymentGate(lifecycle=lifecycle, reports=reports),
        recovery=RecoverySweeper(
            lifecycle,
            assessment_stale_after_s=settings.assessment_timeout_s + settings.recovery_grace_s,
            report_stale_after_s=settings.report_timeout_s + settings.recovery_grace_s,
            interval_s=settings.recovery_interval_s,
        ),
    )


def create_app(
    *,
    storage: TaskStorage | None = None,
    settings_override: Settings | None = None,
    assessment_client: AssessmentClient | None = None,
    renderer: ReportRenderer | None = None,
) -> FastAPI:
    """Application factory.

    Tests inject a storage backend and stub collaborators; production builds
    PostgreSQL storage and configured clients from settings at startup.
    """
    settings = settings_override or get_settings()

    def _ensure_services(app: FastAPI) -> Services:
        if not hasattr(app.state, "services"):
            app.state.services = build_services(
                settings,
                storage=storage,
                assessment_client=assessment_client,
                renderer=renderer,
            )
        return app.state.services

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = _ensure_services(app)
        services.storage.migrate()
        if settings.recover_on_startup:
            services.recovery.start()
        yield
        services.recovery.stop()
        if not services.workers.join(timeout=settings.report_timeout_s):
            logger.warning("app_shutdown event=workers_still_running")
        services.workers.shutdown(wait_for_jobs=False)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_services(app)

    @app.exception_handler(AssessmentApiError)
    async def _lifecycle_error_handler(_: Request, exc: AssessmentApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    def _services(request: Request) -> Services:
        return _ensure_services(request.app)

    # Multiple health endpoints map to the same function for compatibility with
    # different health checkers and load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/questionnaires", response_model=SubmitQuestionnaireResponse, status_code=201)
    def submit_questionnaire(
        payload: Submission, request: Request, response: Response
    ) -> SubmitQuestionnaireResponse:
        services = _services(request)
        task, created = services.lifecycle.create_or_get(payload.submission_ref)
        if created:
            services.orchestrator.run_async(task.task_id, payload)
        else:
            response.status_code = 200
        return SubmitQuestionnaireResponse(
            submission_ref=payload.submission_ref,
            asset_hash=asset_hash(payload),
            task=TaskCreatedResponse(
                task_id=task.task_id,
                status=task.status,
                message=(
                    "Task created. AI risk assessment is being processed in the background."
                    if created
                    else "An active task already exists for this submission."
                ),
            ),
            created=created,
        )

    @app.post("/tasks", response_model=TaskCreatedResponse, status_code=201)
    def create_task(payload: CreateTaskRequest, request: Request) -> TaskCreatedResponse:
        services = _services(request)
        submission = payload.submission
        task, _ = services.lifecycle.create_or_get(submission.submission_ref, strict=True)
        services.orchestrator.run_async(task.task_id, submission)
        return TaskCreatedResponse(
            task_id=task.task_id,
            status=task.status,
            message="Task created. AI risk assessment is being processed in the background.",
        )

    @app.get("/tasks", response_model=TaskListResponse)
    def list_tasks(
        request: Request,
        page: int = Query(default=1),
        limit: int = Query(default=20),
        status: TaskStatus | None = Query(default=None),
    ) -> TaskListResponse:
        tasks, pagination = _services(request).lifecycle.list_tasks(
            page=page, limit=limit, status=status
        )
        return TaskListResponse(
            tasks=[task.snapshot() for task in tasks],
            pagination=Pagination(**pagination),
        )

    @app.get("/tasks/by-submission/{submission_ref}", response_model=TaskSnapshot)
    def get_task_by_submission(submission_ref: str, request: Request) -> TaskSnapshot:
        return _services(request).lifecycle.get_by_submission(submission_ref).snapshot()

    @app.get("/tasks/{task_id}", response_model=TaskSnapshot)
    def get_task(task_id: str, request: Request) -> TaskSnapshot:
        return _services(request).lifecycle.get(task_id).snapshot()

    @app.post("/tasks/{task_id}/payment", response_model=PaymentResponse)
    def authorize_payment(
        task_id: str, payload: PaymentRequest, request: Request
    ) -> PaymentResponse:
        report_status = _services(request).payments.authorize(
            task_id, payload.tx_hash, payload.amount
        )
        return PaymentResponse(
            task_id=task_id,
            report_status=report_status,
            message="Payment recorded. Report generation started.",
        )

    @app.get("/tasks/{task_id}/report-status", response_model=ReportStatusView)
    def get_report_status(task_id: str, request: Request) -> ReportStatusView:
        return _services(request).reports.get_status(task_id)

    @app.get("/tasks/{task_id}/report", response_class=HTMLResponse)
    def get_report(task_id: str, request: Request) -> HTMLResponse:
        return HTMLResponse(_services(request).reports.fetch_artifact(task_id))

    # Operations/testing override: no payment check, same assessment precondition.
    @app.post("/tasks/{task_id}/generate-report", response_model=GenerateReportResponse)
    def generate_report(task_id: str, request: Request) -> GenerateReportResponse:
        task = _services(request).reports.generate_now(task_id)
        return GenerateReportResponse(
            task_id=task_id,
            report_status=task.report_status,
            report_length=len(task.report_artifact or ""),
            message="Report generated successfully.",
        )

    return app


# Module-level app for `uvicorn assessment_api.main:app`.
app = create_app()
