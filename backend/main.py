import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.routers import attendance, auth, core, sessions, students
from backend.services.errors import AttendanceError
from backend.services.sessions import rotations
from database.db import DB_PATH, create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Attendabyte API")


# -----------------------------
# CORS (web client)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(AttendanceError)
async def _attendance_error(request: Request, exc: AttendanceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# -----------------------------
# Startup / shutdown
# -----------------------------
@app.on_event("startup")
def _startup():
    create_tables()
    logger.info("Attendabyte API ready (db=%s)", DB_PATH)


@app.on_event("shutdown")
async def _shutdown():
    await rotations.stop_all()


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(sessions.router)
app.include_router(attendance.router)
app.include_router(students.router)
