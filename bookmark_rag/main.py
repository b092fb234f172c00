from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, FastAPI

from bookmark_rag.core.bulk_import import validate_urls
from bookmark_rag.core.embedding_providers import EmbeddingError, get_provider
from bookmark_rag.core.errors import ImportValidationError
from bookmark_rag.core.export import export_all_bookmarks
from bookmark_rag.core.jobs import JobStatus, JobType, get_job_store
from bookmark_rag.core.llm_providers import get_llm_provider
from bookmark_rag.core.messages import MessageType
from bookmark_rag.core.models import BookmarkStatus
from bookmark_rag.core.prompts import DEFAULT_PROMPTS, get_prompt, reset_prompt, save_prompt
from bookmark_rag.core.settings import Settings
from bookmark_rag.core.storage import get_db, init_db
from bookmark_rag.core.worker import Worker

logger = logging.getLogger(__name__)

app = FastAPI(title="bookmark-rag")

_worker: Worker | None = None


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_worker() -> Worker:
    assert _worker is not None, "Worker not initialized"
    return _worker


@app.on_event("startup")
async def _startup() -> None:
    global _worker
    s = Settings.from_env()
    configure_logging(s.log_level)
    db = init_db(s)
    _worker = Worker.from_settings(s, db, get_job_store())
    await _worker.initialize()
    logger.info(f"Started ({s.app_env}), database at {s.db_path}")


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _worker is not None:
        await _worker.shutdown()


# ==================== Messages ====================


@app.post("/api/messages")
async def api_messages(message: Any = Body(...)):
    """Dispatch one request/response message to its handler."""
    return await get_worker().router.dispatch(message)


# ==================== Bookmarks ====================


@app.get("/api/bookmarks")
def api_bookmarks(status: str | None = None, limit: int = 100):
    db = get_db()
    try:
        status_filter = BookmarkStatus(status) if status else None
    except ValueError:
        return {"error": f"Unknown status: {status}"}
    bookmarks = db.list_bookmarks(status=status_filter, limit=limit)
    return {"bookmarks": [b.to_dict() for b in bookmarks], "stats": db.get_stats()}


@app.post("/api/bookmarks")
async def api_save_bookmark(payload: dict = Body(...)):
    return await get_worker().router.dispatch({**payload, "type": MessageType.SAVE_FROM_PAGE.value})


@app.get("/api/bookmarks/{bookmark_id}")
def api_bookmark(bookmark_id: str):
    db = get_db()
    bookmark = db.get_bookmark(bookmark_id)
    if bookmark is None:
        return {"error": "Bookmark not found"}
    markdown = db.get_markdown(bookmark_id)
    return {
        "bookmark": {**bookmark.to_dict(), "errorStack": bookmark.error_stack},
        "markdown": markdown.content if markdown else None,
        "questionsAnswers": [
            {"question": qa.question, "answer": qa.answer} for qa in db.get_question_answers(bookmark_id)
        ],
        "jobs": [j.to_dict() for j in get_job_store().get_by_bookmark(bookmark_id)],
    }


@app.post("/api/bookmarks/{bookmark_id}/retry")
async def api_retry_bookmark(bookmark_id: str):
    return await get_worker().router.dispatch(
        {"type": MessageType.BOOKMARK_RETRY.value, "bookmarkId": bookmark_id}
    )


@app.delete("/api/bookmarks/{bookmark_id}")
def api_delete_bookmark(bookmark_id: str):
    get_job_store().cancel_pending_for_bookmark(bookmark_id)
    if not get_db().delete_bookmark(bookmark_id):
        return {"error": "Bookmark not found"}
    return {"success": True}


# ==================== Import / Export ====================


@app.post("/api/import/validate")
def api_validate_urls(payload: dict = Body(...)):
    return validate_urls(payload.get("text") or payload.get("urls") or []).to_dict()


@app.post("/api/import/urls")
async def api_import_urls(payload: dict = Body(...)):
    return await get_worker().router.dispatch(
        {"type": MessageType.CREATE_FROM_URL_LIST.value, "urls": payload.get("urls")}
    )


@app.get("/api/export")
def api_export():
    return export_all_bookmarks(get_db())


@app.post("/api/import")
async def api_import(payload: Any = Body(...), file_name: str = "import"):
    try:
        result = get_worker().import_payload(payload, file_name=file_name)
    except ImportValidationError as e:
        return {"success": False, "error": str(e)}
    return result.to_dict()


# ==================== Sync ====================


@app.post("/api/sync/trigger")
async def api_sync_trigger():
    return await get_worker().router.dispatch({"type": MessageType.SYNC_TRIGGER.value})


@app.get("/api/sync/status")
async def api_sync_status():
    return await get_worker().router.dispatch({"type": MessageType.SYNC_STATUS.value})


@app.post("/api/sync/settings")
async def api_sync_settings(payload: dict = Body(...)):
    return await get_worker().router.dispatch(
        {"type": MessageType.SYNC_UPDATE_SETTINGS.value, "settings": payload}
    )


@app.post("/api/sync/test")
async def api_sync_test():
    return await get_worker().router.dispatch({"type": MessageType.SYNC_TEST_CONNECTION.value})


# ==================== Prompts ====================


@app.get("/api/prompts")
def api_prompts():
    db = get_db()
    return {"prompts": [get_prompt(key, db).to_dict() for key in DEFAULT_PROMPTS]}


@app.put("/api/prompts/{key}")
def api_save_prompt(key: str, payload: dict = Body(...)):
    template = payload.get("template")
    if not isinstance(template, str) or not template.strip():
        return {"error": "'template' is required"}
    try:
        save_prompt(key, template, get_db())
    except KeyError:
        return {"error": f"Unknown prompt: {key}"}
    return get_prompt(key, get_db()).to_dict()


@app.delete("/api/prompts/{key}")
def api_reset_prompt(key: str):
    if key not in DEFAULT_PROMPTS:
        return {"error": f"Unknown prompt: {key}"}
    reset_prompt(key, get_db())
    return get_prompt(key, get_db()).to_dict()


# ==================== Jobs ====================


@app.get("/api/jobs")
def api_jobs(limit: int = 50, type: str | None = None, status: str | None = None, parent: str | None = None):
    try:
        job_type = JobType(type) if type else None
        job_status = JobStatus(status) if status else None
    except ValueError as e:
        return {"error": str(e)}
    jobs = get_job_store().list_recent(limit=limit, type=job_type, status=job_status, parent_job_id=parent)
    return {"jobs": [j.to_dict() for j in jobs]}


# ==================== Search & providers ====================


@app.get("/api/search")
async def api_search(q: str = "", limit: int = 10):
    """Semantic search over Q&A pairs."""
    if not q.strip():
        return {"results": []}
    provider = get_provider(Settings.from_env())
    try:
        vectors = await provider.embed([q])
    except EmbeddingError as e:
        return {"error": str(e)}
    return {"results": get_db().search_questions(vectors[0], limit=limit)}


@app.get("/api/providers/health")
async def api_providers_health():
    s = Settings.from_env()
    results = [await get_llm_provider(s).health_check(), await get_provider(s).health_check()]
    return {
        "providers": [
            {
                "provider": r.provider,
                "model": r.model,
                "healthy": r.healthy,
                "message": r.message,
                "latency_ms": r.latency_ms,
            }
            for r in results
        ]
    }
