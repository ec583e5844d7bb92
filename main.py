import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from app.config import APP_NAME, CORS_ORIGINS, SCHEDULER_ENABLED
from app.tasks import start_scheduler, stop_scheduler

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Import routers
from app.routers import health, auth, ws
from app.routers.ops import router as ops_router
from app.routers.kiosk import router as kiosk_router
from app.routers.admin import router as admin_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting Club Ops API...")
    if SCHEDULER_ENABLED:
        start_scheduler()
    yield
    # Shutdown
    stop_scheduler()
    logger.info("Shutting down Club Ops API...")


app = FastAPI(
    title=APP_NAME,
    description="Front desk, inventory and checkout operations API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


VALIDATION_MESSAGES = {
    "Field required": "Required",
    "String should have at least 1 character": "Must not be empty",
    "Input should be a valid integer": "Must be a whole number",
    "Input should be a valid number": "Must be a number",
    "Input should be a valid boolean": "Must be true or false",
}


def _translate_validation(error):
    msg = error["msg"]
    translated = VALIDATION_MESSAGES.get(msg)
    if translated:
        return translated
    if msg.startswith("String should match pattern"):
        return "Invalid value"
    return msg


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    errors = exc.errors()
    parts = []
    for e in errors:
        field = e["loc"][-1] if e.get("loc") else ""
        translated = _translate_validation(e)
        parts.append(f"{field}: {translated}" if field and field != "__root__" else translated)
    message = "; ".join(parts)
    return JSONResponse(
        status_code=422,
        content={"detail": {"error_code": "VALIDATION_ERROR", "message": message}},
    )


@app.get("/")
def root():
    return {
        "message": "Welcome to Club Ops API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# Include routers
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(ops_router)
app.include_router(kiosk_router)
app.include_router(admin_router)
app.include_router(ws.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8181, reload=True)
