"""FastAPI application — REST API for creative brainstorm generation.

Endpoints:
    GET    /health                                   — Health check (DB connectivity)
    POST   /generations                              — Start a run for a OneSheet
    GET    /generations/{run_id}                     — Progress snapshot
    GET    /generations/{run_id}/result              — Final result once the run is done
    POST   /generations/{run_id}/cancel              — Stop after the in-progress stage
    GET    /onesheets/{target_id}/brainstorm         — Saved brainstorm
    PUT    /onesheets/{target_id}/brainstorm         — Save manual edits
    DELETE /onesheets/{target_id}/brainstorm         — Clear the brainstorm
    GET    /onesheets/{target_id}/brainstorm/export  — Download as JSON or CSV
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from onesheet_brainstorm.config import settings
from onesheet_brainstorm.db import close_pool, get_pool
from onesheet_brainstorm.errors import AlreadyRunning, RunPreconditionFailed, StorageError
from onesheet_brainstorm.export import export_csv, export_json
from onesheet_brainstorm.models import AggregateResult, ContextFlags, GenerationRequest
from onesheet_brainstorm.orchestrator import GenerationOrchestrator
from onesheet_brainstorm.provider import LangChainProvider
from onesheet_brainstorm.research import PostgresResearchSources, ResearchSources
from onesheet_brainstorm.store import DocumentStore, PostgresDocumentStore
from onesheet_brainstorm.utils.logging import get_logger

log = get_logger()


class GenerationBody(BaseModel):
    target_id: str = Field(min_length=1)
    model_id: str | None = Field(None, description="Defaults to the configured model")
    context_flags: ContextFlags = Field(default_factory=ContextFlags)
    evidence_selection: list[str] = Field(default_factory=list, description="Selected ad ids")
    iteration_selection: list[str] = Field(default_factory=list, description="Ads to iterate on")

    def to_request(self) -> GenerationRequest:
        return GenerationRequest(
            target_id=self.target_id,
            model_id=self.model_id or settings.default_model,
            context_flags=self.context_flags,
            evidence_selection=frozenset(self.evidence_selection),
            iteration_selection=frozenset(self.iteration_selection),
        )


def create_app(
    orchestrator: GenerationOrchestrator | None = None,
    store: DocumentStore | None = None,
    sources: ResearchSources | None = None,
) -> FastAPI:
    """Build the app. Anything not injected is wired to PostgreSQL at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.pool = None
        if orchestrator is None or store is None or sources is None:
            pool = await get_pool()
            app.state.pool = pool
            app.state.sources = sources or PostgresResearchSources(pool)
            app.state.store = store or PostgresDocumentStore(pool)
            app.state.orchestrator = orchestrator or GenerationOrchestrator(
                LangChainProvider(), app.state.sources, app.state.store
            )
        else:
            app.state.sources = sources
            app.state.store = store
            app.state.orchestrator = orchestrator
        yield
        if app.state.pool is not None:
            await close_pool()

    app = FastAPI(
        title="OneSheet Creative Brainstorm API",
        description="Staged AI generation of ad concepts, iterations, hooks, visuals and best practices",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health(request: Request):
        """Health check — verifies DB connectivity when a pool is in use."""
        pool = request.app.state.pool
        if pool is None:
            return {"status": "ok", "db": None}
        try:
            result = await pool.fetchval("SELECT 1")
            return {"status": "ok", "db": result == 1}
        except Exception as e:
            return {"status": "error", "detail": str(e)}

    # --- Generations ---

    @app.post("/generations", status_code=202)
    async def start_generation(body: GenerationBody, request: Request):
        """Start a brainstorm run. Returns immediately with the run id."""
        orch: GenerationOrchestrator = request.app.state.orchestrator
        try:
            run_id = await orch.submit(body.to_request())
        except AlreadyRunning as e:
            return JSONResponse(status_code=409, content={"error": str(e)})
        except RunPreconditionFailed as e:
            return JSONResponse(status_code=400, content={"error": e.reason})
        return {"run_id": run_id}

    @app.get("/generations/{run_id}")
    async def generation_progress(run_id: str, request: Request):
        snapshot = request.app.state.orchestrator.snapshot(run_id)
        if snapshot is None:
            return JSONResponse(status_code=404, content={"error": "Run not found"})
        return snapshot.model_dump(mode="json")

    @app.get("/generations/{run_id}/result")
    async def generation_result(run_id: str, request: Request):
        orch: GenerationOrchestrator = request.app.state.orchestrator
        result = orch.result(run_id)
        if result is not None:
            return result.model_dump(mode="json")
        if orch.snapshot(run_id) is not None:
            return JSONResponse(status_code=409, content={"error": "Run still in progress"})
        return JSONResponse(status_code=404, content={"error": "Run not found"})

    @app.post("/generations/{run_id}/cancel")
    async def cancel_generation(run_id: str, request: Request):
        orch: GenerationOrchestrator = request.app.state.orchestrator
        if orch.cancel(run_id):
            return {"run_id": run_id, "cancelling": True}
        if orch.result(run_id) is not None:
            return JSONResponse(status_code=409, content={"error": "Run already finished"})
        return JSONResponse(status_code=404, content={"error": "Run not found"})

    # --- Saved brainstorm ---

    @app.get("/onesheets/{target_id}/brainstorm")
    async def get_brainstorm(target_id: str, request: Request):
        try:
            aggregate = await request.app.state.store.load(target_id)
        except StorageError as e:
            return JSONResponse(status_code=500, content={"error": str(e)})
        if aggregate is None:
            return JSONResponse(status_code=404, content={"error": "No creative brainstorm data found"})
        return aggregate.model_dump(mode="json")

    @app.put("/onesheets/{target_id}/brainstorm")
    async def put_brainstorm(target_id: str, aggregate: AggregateResult, request: Request):
        """Save a manually edited brainstorm. Refused while a run owns the OneSheet."""
        if request.app.state.orchestrator.is_running(target_id):
            return JSONResponse(status_code=409, content={"error": "Generation in progress"})
        try:
            await request.app.state.store.save(target_id, aggregate)
        except StorageError as e:
            return JSONResponse(status_code=500, content={"error": str(e)})
        return {"success": True}

    @app.delete("/onesheets/{target_id}/brainstorm")
    async def delete_brainstorm(target_id: str, request: Request):
        if request.app.state.orchestrator.is_running(target_id):
            return JSONResponse(status_code=409, content={"error": "Generation in progress"})
        try:
            await request.app.state.store.clear(target_id)
        except StorageError as e:
            return JSONResponse(status_code=500, content={"error": str(e)})
        return {"success": True}

    @app.get("/onesheets/{target_id}/brainstorm/export")
    async def export_brainstorm(
        target_id: str,
        request: Request,
        format: str = Query("json", pattern="^(json|csv)$"),
    ):
        try:
            aggregate = await request.app.state.store.load(target_id)
        except StorageError as e:
            return JSONResponse(status_code=500, content={"error": str(e)})
        if aggregate is None:
            return JSONResponse(status_code=404, content={"error": "No creative brainstorm data found"})

        if format == "csv":
            filename = f"creative-brainstorm-{date.today().isoformat()}.csv"
            return Response(
                content=export_csv(aggregate),
                media_type="text/csv",
                headers={"Content-Disposition": f'attachment; filename="{filename}"'},
            )

        profile = await request.app.state.sources.profile(target_id)
        return export_json(aggregate, profile.product, profile.landing_page)

    return app


app = create_app()
