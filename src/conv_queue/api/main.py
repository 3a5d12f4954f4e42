from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from conv_queue.catalog import QUALITY_PRESETS, available_formats
from conv_queue.config import resolve_config
from conv_queue.manager import QueueManager
from conv_queue.models import ConversionTask, ConvQueueConfig
from conv_queue.naming import output_file_name
from conv_queue.paths import OUTPUT_SUBDIR, ensure_dir

logger = logging.getLogger(__name__)


class TaskAccepted(BaseModel):
    hash: str
    output_file: str


def create_app(
    config: Optional[ConvQueueConfig] = None,
    manager: Optional[QueueManager] = None,
) -> FastAPI:
    """Build the API around a queue manager.

    A manager built here from ``config`` is closed on shutdown; a manager
    passed in is left for the caller to close.
    """
    config = config or resolve_config()
    owns_manager = manager is None
    manager = manager or QueueManager.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_manager:
            logger.info("Shutting down queue manager")
            manager.close(wait=False)

    app = FastAPI(title="conv-queue", lifespan=lifespan)
    app.state.manager = manager

    converted_dir = ensure_dir(Path(manager.base_dir) / OUTPUT_SUBDIR)
    app.mount(f"/{OUTPUT_SUBDIR}", StaticFiles(directory=str(converted_dir)), name=OUTPUT_SUBDIR)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/formats")
    async def formats():
        return {"formats": available_formats(), "qualities": list(QUALITY_PRESETS)}

    @app.get("/queue")
    async def queue_status():
        return manager.status()

    @app.post("/tasks", status_code=status.HTTP_202_ACCEPTED, response_model=TaskAccepted)
    async def submit_task(task: ConversionTask):
        job_hash = manager.enqueue(task)
        return TaskAccepted(
            hash=job_hash,
            output_file=output_file_name(task.input_file, task.format, task.quality),
        )

    return app
