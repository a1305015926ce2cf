import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from codedrop.config import CORS_ORIGINS, LOG_LEVEL
from codedrop.database import init_db
from codedrop.exceptions import (
    CodeDropError,
    ExpiredError,
    NotFoundError,
    RateLimitedError,
    StorageError,
    ValidationError,
)
from codedrop.routers.files import router as files_router
from codedrop.routers.users import router as users_router

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="CodeDrop", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(files_router)
app.include_router(users_router)


_STATUS_CODES = {
    NotFoundError: 404,
    ExpiredError: 410,
    ValidationError: 400,
}


@app.exception_handler(RateLimitedError)
async def rate_limited_handler(request: Request, exc: RateLimitedError):
    return JSONResponse(
        status_code=429,
        content={"message": exc.message, "timeoutSeconds": exc.timeout_seconds},
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


@app.exception_handler(CodeDropError)
async def codedrop_error_handler(request: Request, exc: CodeDropError):
    status_code = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500
    )
    return JSONResponse(status_code=status_code, content={"message": exc.message})


@app.get("/")
def read_root():
    return {"message": "CodeDrop is running"}
