import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from db import create_db_and_tables, engine
from errors import AnnadanError
from lifecycle import LifecycleEngine
from logging_config import setup_logging
from recipe_ai import GeminiRecipeGenerator
from repository import Store
from routers import auth, donations, feedback, pickup_requests, profile, recipes
from storage import CloudinaryImageStore

settings = get_settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Annadan")

# One instance of each collaborator for the whole process.
app.state.images = CloudinaryImageStore(settings)
app.state.recipe_generator = GeminiRecipeGenerator(settings)
app.state.lifecycle = LifecycleEngine(
    Store(engine),
    images=app.state.images,
    allow_multiple_approvals=settings.allow_multiple_approvals,
)


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    if location:
        return f"{'.'.join(location)}: {first.get('msg', 'invalid value')}"
    return first.get("msg", "Invalid request")


@app.exception_handler(AnnadanError)
async def annadan_error_handler(request: Request, exc: AnnadanError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": _describe_validation_error(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/")
def read_root():
    return {"message": "Annadan API is running"}


app.include_router(auth.router)
app.include_router(donations.router, prefix="/donations")
app.include_router(pickup_requests.router, prefix="/pickup-requests")
app.include_router(profile.router, prefix="/profile")
app.include_router(recipes.router, prefix="/recipes")
app.include_router(feedback.router, prefix="/feedback")
