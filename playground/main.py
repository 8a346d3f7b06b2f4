import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import init_db
from .errors import AlreadyGeneratingError, LLMError, NotFoundError
from .routers import generations, reports, threads
from .schemas import UserCreate, UserRead
from .users import bearer_backend, cookie_backend, fastapi_users

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI(title="Report Playground")

# Enable CORS if needed
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Route Includes
# ----------------------
app.include_router(threads.router)
app.include_router(reports.router)
app.include_router(generations.router)

# Authentication Routes
app.include_router(
    fastapi_users.get_auth_router(cookie_backend),
    prefix="/auth/cookie",
    tags=["auth"],
)
app.include_router(
    fastapi_users.get_auth_router(bearer_backend),
    prefix="/auth/bearer",
    tags=["auth"],
)
app.include_router(
    fastapi_users.get_register_router(UserRead, UserCreate),
    prefix="/auth",
    tags=["auth"],
)


# -----------------------------------------------------
# Domain errors -> HTTP
# -----------------------------------------------------
@app.exception_handler(NotFoundError)
async def _not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AlreadyGeneratingError)
async def _already_generating_handler(request: Request, exc: AlreadyGeneratingError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(LLMError)
async def _llm_error_handler(request: Request, exc: LLMError):
    logger.warning("Model call failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.on_event("startup")
async def on_startup():
    await init_db()
    logger.info("Report playground started")
