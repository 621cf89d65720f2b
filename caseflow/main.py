"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from caseflow.api import cases, documents, tasks
from caseflow.config import Settings
from caseflow.pipeline.llm_client import GatewayClient
from caseflow.pipeline.orchestrator import CasePipeline
from caseflow.pipeline.store import JsonCaseStore, LocalBlobStore
from caseflow.pipeline.tasks import TaskRegistry

logger = logging.getLogger(__name__)


def build_pipeline(settings: Settings) -> CasePipeline:
    """Wire the pipeline components from one settings object."""
    return CasePipeline(
        settings=settings,
        store=JsonCaseStore(settings.cases_dir),
        blobs=LocalBlobStore(settings.blobs_dir),
        gateway=GatewayClient(settings),
        tasks=TaskRegistry(
            settings.max_concurrent_pipelines,
            retention_seconds=settings.task_retention_seconds,
            max_finished=settings.max_finished_tasks,
        ),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: build the pipeline, cancel running tasks on shutdown."""
        app.state.pipeline = build_pipeline(settings)
        logger.info(f"Case store at {settings.cases_dir}; gateway {settings.gateway_base_url}")
        yield
        await app.state.pipeline.tasks.shutdown()

    app = FastAPI(
        title="caseflow",
        description="Document extraction and consolidation pipeline for maternity-benefit cases",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(cases.router, prefix="/api/cases", tags=["Cases"])
    app.include_router(documents.router, prefix="/api/cases", tags=["Documents"])
    app.include_router(tasks.router, prefix="/api/tasks", tags=["Tasks"])

    @app.get("/api/health")
    async def health():
        return {"status": "operational", "service": "caseflow"}

    return app


app = create_app()
