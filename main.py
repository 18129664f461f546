"""
NotebookLM Relay: main entry point.

Starts:
    • Structured JSON logging
    • SQLite job store init
    • Job dispatcher (background asyncio task, one NotebookLM session)
    • Telegram bot (long polling)
    • FastAPI HTTP server (for the /jobs status API)
"""

import asyncio
import contextlib
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict

import uvicorn
from dotenv import load_dotenv

load_dotenv()  # must run before any module-level os.getenv() calls

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from agent.notebooklm import NotebookLMSession
from agent.parser import is_valid_url
from bot.telegram_bot import TelegramNotifier, create_bot_app
from db.database import JobStore
from models.job import OriginRef
from storage.r2 import R2Storage
from workers.job_worker import Dispatcher
from workers.pipeline import JobPipeline


# ── Structured JSON logging ────────────────────────────────────────────────────

class _JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    _SKIP = frozenset({
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    })

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        out: dict = {
            "ts":     self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level":  record.levelname,
            "logger": record.name,
            "msg":    record.message,
        }
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        # Bubble up any extra= fields passed by callers
        for k, v in record.__dict__.items():
            if k not in self._SKIP:
                out[k] = v
        return json.dumps(out, default=str, ensure_ascii=False)


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(_JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True
    # httpx logs every Telegram long-poll request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


setup_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

store = JobStore()
dispatcher: Dispatcher | None = None


async def stop_worker(worker: Dispatcher, task: asyncio.Task) -> None:
    """Stop the dispatcher and wait for its task to unwind, open session included."""
    worker.stop()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


# ── Lifespan ───────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    global dispatcher

    await store.init()
    logger.info("Database ready", extra={"db_path": store.db_path})

    bot = create_bot_app(store)
    await bot.initialize()

    pipeline = JobPipeline(
        store=store,
        storage=R2Storage(),
        notifier=TelegramNotifier(bot.bot, store),
    )
    dispatcher = Dispatcher(store, pipeline, session=NotebookLMSession())
    worker_task = asyncio.create_task(dispatcher.run_forever())

    await bot.start()
    await bot.updater.start_polling(drop_pending_updates=True)
    logger.info("Telegram bot polling started", extra={"bot": bot.bot.username})

    yield

    logger.info("Shutting down")
    await stop_worker(dispatcher, worker_task)
    await bot.updater.stop()
    await bot.stop()
    await bot.shutdown()


# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(title="NotebookLM Relay", version="0.1.0", lifespan=lifespan)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "dispatcher_running": bool(dispatcher and dispatcher.is_running),
        "current_job_id": dispatcher.current_job_id if dispatcher else None,
    }


class CreateJobRequest(BaseModel):
    url: str
    chat_id: str
    message_id: str
    user_id: str


@app.post("/jobs", status_code=201)
async def api_create_job(req: CreateJobRequest):
    if not is_valid_url(req.url):
        raise HTTPException(status_code=400, detail="url must be an http(s) URL")

    origin = OriginRef(channel=req.chat_id, thread=req.message_id, user=req.user_id)
    job_id = await store.enqueue(req.url, origin)
    return {"job_id": job_id, "status": "pending"}


@app.get("/jobs/{job_id}")
async def api_get_job(job_id: int):
    job = await store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return asdict(job)


@app.get("/jobs/{job_id}/artifacts")
async def api_get_artifacts(job_id: int):
    if not await store.get_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return [asdict(a) for a in await store.get_artifacts(job_id)]


@app.get("/stats")
async def api_stats():
    return await store.stats()


# ── Entry point ────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_config=None,   # let our handler take over
    )
