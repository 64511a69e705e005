"""FastAPI entry point."""
import importlib
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field

from . import __version__
from .config import configure_logging, settings
from .scheduler.errors import (
    InvalidTransitionError,
    PlanValidationError,
    RegistrationError,
    TaskNotFoundError,
    TranslationError,
)
from .scheduler.executor import TaskExecutor
from .scheduler.models import TaskPatch
from .scheduler.schedule import cron_to_human, format_local
from .scheduler.service import ops
from .scheduler.service.service import TaskScheduler
from .scheduler.service.store import TaskStore
from .scheduler.translator import PlanTranslator, preview
from .scheduler.types import TaskStatus
from .services.handlers import build_handlers
from .services.llm import LLMProvider, OpenAICompatibleProvider

CLIENT_NAMES = {"calendar", "mail", "search", "video"}


def build_provider() -> LLMProvider:
    """Language-model provider for translation and llm.* steps."""
    return OpenAICompatibleProvider(
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        temperature=settings.llm_temperature,
        timeout_seconds=settings.llm_timeout_seconds,
    )


def build_scheduler(provider: LLMProvider, **clients: Any) -> TaskScheduler:
    """Wire store, handlers and executor into a scheduler.

    Args:
        provider: Language-model provider
        **clients: Optional ``calendar``, ``mail``, ``search`` and ``video`` clients
    """
    handlers = build_handlers(
        llm=provider,
        temperature=settings.llm_temperature,
        mail_sender=settings.mail_sender,
        **clients,
    )
    executor = TaskExecutor(
        handlers,
        step_timeout_seconds=settings.step_timeout_seconds,
        strict_delivery_dependencies=settings.strict_delivery_dependencies,
    )
    return TaskScheduler(store=TaskStore(settings.database_path), executor=executor)


def load_clients() -> dict[str, Any]:
    """Service clients from the configured factory.

    ``AUTOTASK_CLIENT_FACTORY`` names a ``module:callable`` that takes the
    settings and returns a mapping with any of ``calendar``, ``mail``,
    ``search`` and ``video``. Without a factory only ``llm.*`` steps can run.

    Raises:
        ValueError: If the factory is malformed or returns unknown clients
    """
    target = settings.client_factory
    if not target:
        logger.warning("No client factory configured, only llm operations are available")
        return {}

    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Client factory must look like 'module:callable', got {target!r}")

    factory = getattr(importlib.import_module(module_name), attr)
    clients = dict(factory(settings) or {})
    unknown = set(clients) - CLIENT_NAMES
    if unknown:
        raise ValueError(f"Unknown clients from {target}: {sorted(unknown)}")

    logger.info(f"Loaded clients from {target}: {sorted(clients)}")
    return clients


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle.

    The scheduler and translator are built once here and kept on
    ``app.state``; routes reach them through the request.
    """
    logger.info("=" * 50)
    logger.info("  Autotask")
    logger.info(f"  Database: {settings.database_path}")
    logger.info(f"  Model: {settings.llm_model} @ {settings.llm_base_url}")
    logger.info("=" * 50)

    provider = build_provider()
    scheduler = build_scheduler(provider, **load_clients())
    app.state.translator = PlanTranslator(provider, default_timezone=settings.default_timezone)
    app.state.scheduler = scheduler

    await scheduler.start()
    logger.info(f"Autotask started on http://{settings.host}:{settings.port}")

    yield

    logger.info("Shutting down...")
    app.state.scheduler = None
    await scheduler.stop()
    logger.info("Goodbye!")


app = FastAPI(
    title="Autotask",
    description="Natural-language scheduled tasks",
    version=__version__,
    lifespan=lifespan,
)


# ============== Pydantic Models ==============

class TaskCreateRequest(BaseModel):
    """Create a task from a natural-language request."""
    prompt: str
    owner: str
    recipients: list[str] = Field(default_factory=list)
    sender: Optional[str] = None


class TaskUpdateRequest(BaseModel):
    """Partial task update."""
    name: Optional[str] = None
    description: Optional[str] = None
    cron: Optional[str] = None
    timezone: Optional[str] = None
    enabled: Optional[bool] = None
    status: Optional[TaskStatus] = None


def _require_scheduler(request: Request) -> TaskScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if not scheduler:
        raise HTTPException(status_code=503, detail="Service not ready")
    return scheduler


def _task_payload(task) -> dict[str, Any]:
    data = task.to_dict()
    data["schedule"] = cron_to_human(task.cron, task.timezone)
    data["next_run"] = format_local(task.next_run_at_ms, task.timezone)
    return data


# ============== Health ==============

@app.get("/health")
@app.get("/api/health")
async def health(request: Request):
    """Health check."""
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "ok",
        "version": __version__,
        "scheduler": scheduler.status().to_dict() if scheduler else {},
    }


@app.get("/api/scheduler/status")
async def scheduler_status(request: Request):
    return _require_scheduler(request).status().to_dict()


# ============== Tasks ==============

@app.post("/api/tasks")
async def create_task(body: TaskCreateRequest, request: Request):
    """Translate a request into a task awaiting approval."""
    svc = _require_scheduler(request)
    try:
        task = await ops.create_task_from_prompt(
            svc,
            request.app.state.translator,
            body.prompt,
            body.owner,
            recipients=body.recipients or None,
            sender=body.sender,
        )
    except PlanValidationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    except TranslationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"task": _task_payload(task), "preview": preview(task)}


@app.get("/api/tasks")
async def list_tasks(request: Request, owner: Optional[str] = None, limit: int = 100):
    svc = _require_scheduler(request)
    tasks = await ops.list_tasks(svc, owner=owner, limit=limit)
    return {"tasks": [_task_payload(t) for t in tasks], "total": len(tasks)}


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: str, request: Request):
    svc = _require_scheduler(request)
    try:
        task = await ops.get_task(svc, task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    return _task_payload(task)


@app.put("/api/tasks/{task_id}")
async def update_task(task_id: str, body: TaskUpdateRequest, request: Request):
    svc = _require_scheduler(request)
    patch = TaskPatch(**body.model_dump())
    try:
        task = await ops.update_task(svc, task_id, patch)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except PlanValidationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    except (InvalidTransitionError, RegistrationError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _task_payload(task)


@app.delete("/api/tasks/{task_id}")
async def delete_task(task_id: str, request: Request):
    svc = _require_scheduler(request)
    if not await ops.delete_task(svc, task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"status": "ok", "task_id": task_id}


@app.post("/api/tasks/{task_id}/approve")
async def approve_task(task_id: str, request: Request):
    """Approve a pending task and start its schedule."""
    svc = _require_scheduler(request)
    try:
        task = await ops.approve_task(svc, task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except (InvalidTransitionError, RegistrationError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _task_payload(task)


@app.post("/api/tasks/{task_id}/execute")
async def execute_task(task_id: str, request: Request):
    """Run a task now, regardless of its schedule or enabled flag."""
    svc = _require_scheduler(request)
    try:
        record = await svc.execute_task(task_id, force=True)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    if record is None:
        raise HTTPException(status_code=409, detail="Task is already running")
    return record.to_dict()


@app.get("/api/tasks/{task_id}/history")
async def task_history(task_id: str, request: Request, limit: int = 20):
    svc = _require_scheduler(request)
    try:
        return await ops.get_history(svc, task_id, limit=limit)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")


def main():
    """Run the API server."""
    configure_logging()
    uvicorn.run(
        "autotask.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
