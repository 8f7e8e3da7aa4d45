from fastapi import FastAPI, Depends
from dotenv import load_dotenv
load_dotenv(dotenv_path="backend/.env", override=False)
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware
from .routers import admin_cv, cv
from .db.database import ensure_schema
from .core.logging import init_logging
from .core import config
from .core.errors import CVUploadException, ErrorCodes, StoreError
from .security.api_key import get_api_key
from .security.rate_limit import init_upload_limiter, reset_upload_limiter
from .services.email_queue import EmailQueueService
from .services.queue_scheduler import start_queue_scheduler, stop_queue_scheduler, get_last_run_summary, is_running
import logging, time, uuid
from fastapi import Request
from fastapi.responses import StreamingResponse
from .core.events import broadcaster
from fastapi.responses import JSONResponse
from asyncio import create_task, sleep


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_logging()
    ensure_schema()
    init_upload_limiter()
    if config.scheduler_enabled():
        start_queue_scheduler()

    async def _keepalive():
        while True:
            broadcaster.publish("keepalive", "{}")
            await sleep(15)
    ka_task = create_task(_keepalive())
    yield
    ka_task.cancel()
    stop_queue_scheduler()
    reset_upload_limiter()

app = FastAPI(title="CV Intake Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(cv.router, prefix="/api/cv", tags=["cv"])
app.include_router(admin_cv.router, prefix="/api/admin", tags=["admin"], dependencies=[Depends(get_api_key)])


@app.exception_handler(CVUploadException)
async def cv_upload_exception_handler(request: Request, exc: CVUploadException):
    logging.getLogger(__name__).warning(
        "request_failed",
        extra={"path": request.url.path, "status": exc.status_code, "error": exc.message, "kind": exc.code.value},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=exc.headers)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logging.getLogger(__name__).error("store_unavailable", extra={"path": request.url.path, "kind": exc.kind, "error": str(exc)})
    return JSONResponse(
        status_code=503,
        content={"success": False, "error": "Database unavailable", "code": ErrorCodes.DATABASE_ERROR.value, "details": {"kind": exc.kind}},
    )


@app.get("/health")
def health():
    return {
        "status": "ok",
        "emailQueue": EmailQueueService().get_queue_stats().model_dump(by_alias=True),
        "scheduler": {"running": is_running(), "lastRun": get_last_run_summary()},
        "eventSubscribers": broadcaster.subscriber_count(),
    }

@app.middleware("http")
async def timing_logger(request: Request, call_next):
    trace_id = request.headers.get("X-Trace-Id", str(uuid.uuid4())[:8])
    start = time.perf_counter()
    try:
        response = await call_next(request)
        duration = (time.perf_counter()-start)*1000
        logging.getLogger().info(
            f"{request.method} {request.url.path} {response.status_code} {duration:.1f}ms",
            extra={"trace_id": trace_id, "method": request.method, "path": request.url.path, "status": response.status_code, "duration_ms": round(duration,1)}
        )
        response.headers['X-Trace-Id'] = trace_id
        return response
    except Exception as exc:  # pragma: no cover
        duration = (time.perf_counter()-start)*1000
        logging.getLogger().error(
            f"ERR {request.method} {request.url.path} {type(exc).__name__}",
            exc_info=exc,
            extra={"trace_id": trace_id, "method": request.method, "path": request.url.path, "status": 500, "duration_ms": round(duration,1)}
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal Server Error", "code": ErrorCodes.INTERNAL_ERROR.value, "trace_id": trace_id},
        )

@app.get('/api/events')
async def sse_events(request: Request):  # pragma: no cover (difficult in unit tests)
    async def event_stream():
        async for msg in broadcaster.subscribe():
            # client disconnect handling
            if await request.is_disconnected():
                break
            yield msg
    return StreamingResponse(event_stream(), media_type='text/event-stream')
