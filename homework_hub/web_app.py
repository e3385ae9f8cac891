from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from homework_hub.config_manager import ConfigManager
from homework_hub.errors import (
    HomeworkHubError,
    InvalidTask,
    MissingParameter,
    ReadOnlyTaskError,
    StorePermissionError,
    TaskNotFound,
)
from homework_hub.ical_feed import build_candidates, feed_source_for
from homework_hub.reconciler import SyncReconciler
from homework_hub.scheduler import SyncScheduler
from homework_hub.task_service import TaskService
from homework_hub.task_store import TaskStore

logger = logging.getLogger(__name__)

MISSING_URL_ERROR = "Missing URL parameter"
PARSE_FAILED_ERROR = "Failed to parse calendar URL"
SYNC_FAILED_MESSAGE = "Failed to sync calendar."


class ParseIcalRequest(BaseModel):
    url: Any = None


class TaskCreateRequest(BaseModel):
    taskName: str = ""
    subject: str = "Drama"
    dueDate: str = ""
    description: str = ""


class TaskUpdateRequest(BaseModel):
    taskName: Optional[str] = None
    subject: Optional[str] = None
    dueDate: Optional[str] = None
    description: Optional[str] = None
    completed: Optional[bool] = None


class SyncSettingsRequest(BaseModel):
    icalUrl: str = Field(default="", max_length=2048)


class AppContext:
    def __init__(self, config_manager: ConfigManager) -> None:
        self.config_manager = config_manager
        config = self.config_manager.load()
        self.store = TaskStore(config.store.path)
        self.reconciler = SyncReconciler(self.store, feed_source_for(config.feed))
        self.task_service = TaskService(self.store)
        self.scheduler = SyncScheduler(self.reconciler, self.config_manager)


def _http_error(exc: HomeworkHubError) -> HTTPException:
    if isinstance(exc, TaskNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ReadOnlyTaskError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StorePermissionError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (InvalidTask, MissingParameter)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_app() -> FastAPI:
    context = AppContext(ConfigManager.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.context.config_manager.load().sync.background_enabled:
            app.state.context.scheduler.start()
        yield
        app.state.context.scheduler.stop()

    app = FastAPI(title="Homework Hub", version="0.1.0", lifespan=lifespan)
    app.state.context = context
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.options("/api/parse-ical", include_in_schema=False)
    def parse_ical_preflight() -> Response:
        return Response(status_code=204)

    @app.post("/api/parse-ical")
    def parse_ical(request: Optional[ParseIcalRequest] = None) -> JSONResponse:
        url = request.url if request else None
        if not isinstance(url, str) or not url.strip():
            return JSONResponse(status_code=400, content={"error": MISSING_URL_ERROR})
        feed = app.state.context.config_manager.load().feed
        try:
            candidates = build_candidates(
                url,
                timeout=feed.timeout_seconds,
                user_agent=feed.user_agent,
                max_span_days=feed.max_span_days,
            )
        except HomeworkHubError as exc:
            logger.error("iCal parse error for %s: %s", url, exc)
            return JSONResponse(status_code=500, content={"error": PARSE_FAILED_ERROR})
        logger.info("Parsed %d task candidates (filtered for future)", len(candidates))
        return JSONResponse(content={"events": [candidate.to_dict() for candidate in candidates]})

    @app.get("/api/users/{user_id}/tasks")
    def list_tasks(
        user_id: str,
        view: str = "all",
        upcoming_filter: Optional[str] = Query(default=None, alias="filter"),
    ) -> dict[str, Any]:
        try:
            tasks = app.state.context.task_service.list_tasks(user_id, view=view, upcoming_filter=upcoming_filter)
        except HomeworkHubError as exc:
            raise _http_error(exc) from exc
        return {"tasks": [task.to_dict() for task in tasks]}

    @app.post("/api/users/{user_id}/tasks", status_code=201)
    def add_task(user_id: str, request: TaskCreateRequest) -> dict[str, Any]:
        try:
            task = app.state.context.task_service.add_task(user_id, request.model_dump())
        except HomeworkHubError as exc:
            raise _http_error(exc) from exc
        return {"task": task.to_dict()}

    @app.patch("/api/users/{user_id}/tasks/{task_id}")
    def update_task(user_id: str, task_id: str, request: TaskUpdateRequest) -> dict[str, Any]:
        try:
            task = app.state.context.task_service.update_task(
                user_id, task_id, request.model_dump(exclude_unset=True)
            )
        except HomeworkHubError as exc:
            raise _http_error(exc) from exc
        return {"task": task.to_dict()}

    @app.delete("/api/users/{user_id}/tasks/{task_id}")
    def delete_task(user_id: str, task_id: str) -> dict[str, str]:
        try:
            app.state.context.task_service.delete_task(user_id, task_id)
        except HomeworkHubError as exc:
            raise _http_error(exc) from exc
        return {"message": "task deleted"}

    @app.post("/api/users/{user_id}/tasks/{task_id}/toggle")
    def toggle_task(user_id: str, task_id: str) -> dict[str, Any]:
        try:
            task = app.state.context.task_service.toggle_complete(user_id, task_id)
        except HomeworkHubError as exc:
            raise _http_error(exc) from exc
        return {"task": task.to_dict()}

    @app.get("/api/users/{user_id}/dashboard")
    def dashboard(user_id: str) -> dict[str, int]:
        return app.state.context.task_service.dashboard(user_id)

    @app.get("/api/users/{user_id}/sync-settings")
    def get_sync_settings(user_id: str) -> dict[str, Any]:
        settings = app.state.context.store.get_sync_settings(user_id)
        payload = settings.to_dict()
        payload["isSyncing"] = app.state.context.reconciler.is_syncing(user_id)
        return payload

    @app.put("/api/users/{user_id}/sync-settings")
    def put_sync_settings(user_id: str, request: SyncSettingsRequest) -> dict[str, Any]:
        url = request.icalUrl.strip()
        if not url:
            raise HTTPException(status_code=400, detail=MISSING_URL_ERROR)
        result = app.state.context.reconciler.save_feed_url(user_id, url)
        settings = app.state.context.store.get_sync_settings(user_id)
        return {"settings": settings.to_dict(), "result": result.to_dict()}

    @app.post("/api/users/{user_id}/sync")
    def run_sync(user_id: str) -> dict[str, Any]:
        settings = app.state.context.store.get_sync_settings(user_id)
        if not settings.ical_url:
            raise HTTPException(status_code=400, detail=MISSING_URL_ERROR)
        result = app.state.context.reconciler.reconcile(user_id, settings.ical_url, trigger="manual")
        if result.status == "skipped":
            raise HTTPException(status_code=409, detail=result.message)
        if not result.ok:
            raise HTTPException(status_code=502, detail=SYNC_FAILED_MESSAGE)
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/users/{user_id}/sync-runs")
    def sync_runs(user_id: str, limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.store.recent_sync_runs(user_id, limit=limit)}

    return app

