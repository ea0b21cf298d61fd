import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from .config import settings
from .db import init_db_pool, close_db_pool
from .stages.errors import AuthorizationError, BadRequestError, StageEngineError
from .stages.routes import router as stages_router

logger = logging.getLogger(__name__)

app = FastAPI(title="Job Stage Engine", version="0.1.0")
load_dotenv()
app.include_router(stages_router)

@app.on_event("startup")
async def _startup():
    if settings.stage_store != "memory":
        await init_db_pool()

@app.on_event("shutdown")
async def _shutdown():
    await close_db_pool()

@app.exception_handler(StageEngineError)
async def _stage_engine_error(request: Request, exc: StageEngineError):
    if isinstance(exc, AuthorizationError):
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.message)
    elif exc.retryable:
        logger.info("Retryable conflict on %s: %s", request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.http_status)

@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    ]
    err = BadRequestError("Invalid request body", problems=problems)
    return JSONResponse(err.to_dict(), status_code=err.http_status)

@app.get("/health")
async def health():
    return {"ok": True, "service": settings.service_name, "env": settings.env}
