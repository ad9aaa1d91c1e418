import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contentgate.config import get_settings
from contentgate.exceptions import ContentGateError
from contentgate.routers import auth, resources, videos, violations
from contentgate.services.rasterizer import Rasterizer
from contentgate.services.transcoder import TranscodeWorkerPool
from contentgate.services.violations import ViolationLedger

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.rasterizer = Rasterizer()
    app.state.transcode_pool = TranscodeWorkerPool()
    app.state.violation_ledger = ViolationLedger()
    settings.storage_root().mkdir(parents=True, exist_ok=True)
    logger.info("Storage root: %s", settings.storage_root())
    try:
        yield
    finally:
        await app.state.rasterizer.aclose()
        app.state.transcode_pool.shutdown(wait=False)


app = FastAPI(title="ContentGate API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Page-Number", "X-Total-Pages", "X-On-Demand-Converted", "X-Placeholder"],
)


@app.exception_handler(ContentGateError)
async def content_gate_error_handler(request: Request, exc: ContentGateError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, **exc.payload()},
    )


app.include_router(auth.router)
app.include_router(resources.router)
app.include_router(videos.router)
app.include_router(violations.router)


@app.get("/")
def root():
    return {"message": "ContentGate API", "docs": "/docs"}
