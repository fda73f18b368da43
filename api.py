# api.py
from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import structlog
import uvicorn
from fastapi import Body, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from functions.cv_orchestrator import CvOrchestrator, build_orchestrator
from functions.exceptions import CvNotFoundError, CvServiceError
from functions.stage_d_packaging import build_action_result, build_error_response
from schemas.output_schema import HealthCheckResponse, ResumeRecord

logger = structlog.get_logger().bind(module="api")


def _ok(
    message: str,
    *,
    id: Optional[str] = None,
    data: Any = None,
    request_id: Optional[str] = None,
    status_code: int = 200,
) -> JSONResponse:
    result = build_action_result(message, id=id, data=data, request_id=request_id)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


def _error(exc: BaseException, request_id: Optional[str]) -> JSONResponse:
    result, http_status = build_error_response(exc, request_id=request_id)
    return JSONResponse(status_code=http_status, content=result.model_dump(mode="json"))


def _orchestrator(request: Request) -> CvOrchestrator:
    return request.app.state.orchestrator


def _snapshot_payload(records: list[ResumeRecord]) -> list[Dict[str, Any]]:
    return [r.model_dump(mode="json") for r in records]


def create_app(orchestrator: CvOrchestrator | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    When no orchestrator is injected, one is built from parameters.yaml in the
    lifespan handler and closed on shutdown. Handlers are plain `def` so the
    blocking store / generation calls run in the threadpool.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = orchestrator is None
        if owned:
            app.state.orchestrator = build_orchestrator()
        logger.info("api_startup", orchestrator_injected=not owned)
        try:
            yield
        finally:
            if owned:
                app.state.orchestrator.close()
            logger.info("api_shutdown")

    app = FastAPI(
        title="CV Document Service",
        version="1.0.0",
        description="Japanese CV records with 履歴書 / 職務経歴書 generation, exposed via FastAPI.",
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthCheckResponse)
    def health(request: Request) -> HealthCheckResponse:
        orch = _orchestrator(request)
        return HealthCheckResponse(
            status="healthy",
            checks={
                "store": type(orch.store).__name__,
                "llm": type(orch.gateway.llm_client).__name__,
            },
        )

    # ------------------------------------------------------------------
    # CV records
    # ------------------------------------------------------------------
    @app.get("/cvs")
    def list_cvs(
        request: Request,
        x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id"),
        x_request_id: Optional[str] = Header(default=None, alias="X-Request-ID"),
    ) -> JSONResponse:
        try:
            records = _orchestrator(request).list_cvs(x_owner_id or "")
        except Exception as exc:
            return _error(exc, x_request_id)
        return _ok(f"Found {len(records)} CV(s).", data=records, request_id=x_request_id)

    @app.post("/cvs")
    def create_cv(
        request: Request,
        payload: Dict[str, Any] = Body(...),
        x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id"),
        x_request_id: Optional[str] = Header(default=None, alias="X-Request-ID"),
    ) -> JSONResponse:
        try:
            cv_id = _orchestrator(request).save_cv(x_owner_id or "", payload)
        except Exception as exc:
            return _error(exc, x_request_id)
        logger.info("api_cv_created", cv_id=cv_id, request_id=x_request_id)
        return _ok("CV saved successfully.", id=cv_id, request_id=x_request_id, status_code=201)

    @app.put("/cvs/{cv_id}")
    def update_cv(
        cv_id: str,
        request: Request,
        payload: Dict[str, Any] = Body(...),
        x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id"),
        x_request_id: Optional[str] = Header(default=None, alias="X-Request-ID"),
    ) -> JSONResponse:
        try:
            _orchestrator(request).save_cv(x_owner_id or "", payload, existing_id=cv_id)
        except Exception as exc:
            return _error(exc, x_request_id)
        return _ok("CV updated successfully.", id=cv_id, request_id=x_request_id)

    @app.get("/cvs/{cv_id}")
    def get_cv(
        cv_id: str,
        request: Request,
        x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id"),
        x_request_id: Optional[str] = Header(default=None, alias="X-Request-ID"),
    ) -> JSONResponse:
        try:
            record = _orchestrator(request).get_cv(cv_id, x_owner_id or "")
        except Exception as exc:
            return _error(exc, x_request_id)
        if record is None:
            return _error(CvNotFoundError(cv_id), x_request_id)
        return _ok("CV loaded.", id=cv_id, data=record, request_id=x_request_id)

    @app.delete("/cvs/{cv_id}")
    def delete_cv(
        cv_id: str,
        request: Request,
        x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id"),
        x_request_id: Optional[str] = Header(default=None, alias="X-Request-ID"),
    ) -> JSONResponse:
        try:
            _orchestrator(request).delete_cv(cv_id, x_owner_id or "")
        except Exception as exc:
            return _error(exc, x_request_id)
        return _ok("CV deleted successfully.", id=cv_id, request_id=x_request_id)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    @app.post("/cvs/{cv_id}/documents/{doc_type}")
    def generate_document(
        cv_id: str,
        doc_type: str,
        request: Request,
        x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id"),
        x_request_id: Optional[str] = Header(default=None, alias="X-Request-ID"),
    ) -> JSONResponse:
        orch = _orchestrator(request)
        owner_id = x_owner_id or ""
        try:
            orch.generate_document(cv_id, owner_id, doc_type)
            record = orch.get_cv(cv_id, owner_id)
        except Exception as exc:
            return _error(exc, x_request_id)
        return _ok("Document generated successfully.", id=cv_id, data=record, request_id=x_request_id)

    @app.post("/cvs/{cv_id}/documents")
    def generate_all_documents(
        cv_id: str,
        request: Request,
        x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id"),
        x_request_id: Optional[str] = Header(default=None, alias="X-Request-ID"),
    ) -> JSONResponse:
        orch = _orchestrator(request)
        owner_id = x_owner_id or ""
        try:
            orch.generate_all_documents(cv_id, owner_id)
            record = orch.get_cv(cv_id, owner_id)
        except Exception as exc:
            return _error(exc, x_request_id)
        return _ok("Documents generated successfully.", id=cv_id, data=record, request_id=x_request_id)

    # ------------------------------------------------------------------
    # Form helpers
    # ------------------------------------------------------------------
    @app.post("/skills/suggest")
    def suggest_skills(
        request: Request,
        payload: Dict[str, Any] = Body(...),
        x_request_id: Optional[str] = Header(default=None, alias="X-Request-ID"),
    ) -> JSONResponse:
        try:
            skills = _orchestrator(request).suggest_skills(payload.get("job_title"))
        except Exception as exc:
            return _error(exc, x_request_id)
        return _ok("Skills suggested.", data={"skills": skills}, request_id=x_request_id)

    @app.post("/experience/summarize")
    def summarize_experience(
        request: Request,
        payload: Dict[str, Any] = Body(...),
        x_request_id: Optional[str] = Header(default=None, alias="X-Request-ID"),
    ) -> JSONResponse:
        try:
            summary = _orchestrator(request).summarize_experience(payload.get("work_experience"))
        except Exception as exc:
            return _error(exc, x_request_id)
        return _ok("Experience summarized.", data={"summary": summary}, request_id=x_request_id)

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------
    @app.websocket("/ws/cvs")
    async def watch_cvs(websocket: WebSocket, owner_id: str = Query(default="")) -> None:
        """Stream the owner's record list: once on connect, then after every write."""
        orch: CvOrchestrator = websocket.app.state.orchestrator
        await websocket.accept()

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[list[Dict[str, Any]]] = asyncio.Queue()

        def on_snapshot(records: list[ResumeRecord]) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, _snapshot_payload(records))

        try:
            subscription = await run_in_threadpool(orch.watch_cvs, owner_id, on_snapshot)
        except CvServiceError as exc:
            result, _ = build_error_response(exc)
            await websocket.send_json(result.model_dump(mode="json"))
            await websocket.close(code=1008)
            return

        logger.info("ws_subscribed", owner_id=owner_id)

        async def pump() -> None:
            while True:
                records = await queue.get()
                await websocket.send_json({"type": "snapshot", "records": records})

        async def drain() -> None:
            # Client messages are ignored; receiving surfaces the disconnect.
            while True:
                await websocket.receive_text()

        tasks = {asyncio.create_task(pump()), asyncio.create_task(drain())}
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    logger.error("ws_stream_failed", owner_id=owner_id, error=str(exc))
        finally:
            for task in tasks:
                task.cancel()
            subscription.unsubscribe()
            logger.info("ws_unsubscribed", owner_id=owner_id)

    return app


app = create_app()


def serve(host: str | None = None, port: int | None = None) -> None:
    """Run the app under uvicorn. HOST / PORT env vars override the defaults."""
    host = host or os.environ.get("HOST", "0.0.0.0")
    port = port or int(os.environ.get("PORT", "8000"))
    logger.info("api_serving", host=host, port=port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    serve()
