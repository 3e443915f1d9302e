import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import errors
from config import Settings, get_settings
from db_models import IdentifyRequest, FinalResponse
from db_setup import ContactStore
from resolver import IdentityLocks, IdentityResolver
from validation import validate_identify_request

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(store: ContactStore = None, settings: Settings = None) -> FastAPI:
    settings = settings or get_settings()
    store = store or ContactStore(settings.database_path, timeout=settings.store_timeout_seconds)
    resolver = IdentityResolver(
        store,
        locks=IdentityLocks(timeout=settings.lock_timeout_seconds),
        max_retries=settings.resolve_max_retries,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.init()
        logger.info("%s starting up (database: %s)", settings.app_name, store.db_path)
        yield
        logger.info("%s shutting down", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan
    )
    app.state.resolver = resolver

    @app.exception_handler(errors.InvalidInput)
    async def invalid_input_handler(request: Request, exc: errors.InvalidInput):
        return _error(400, str(exc))

    @app.exception_handler(errors.ValidationError)
    async def validation_error_handler(request: Request, exc: errors.ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(errors.TransientStoreFailure)
    async def transient_failure_handler(request: Request, exc: errors.TransientStoreFailure):
        logger.warning("Contact store unavailable: %s", exc)
        return _error(503, "Contact store temporarily unavailable")

    @app.exception_handler(errors.ConflictingMerge)
    async def conflicting_merge_handler(request: Request, exc: errors.ConflictingMerge):
        logger.warning("Merge conflict persisted after retries: %s", exc)
        return _error(409, "Concurrent update on this identity, please retry")

    @app.exception_handler(errors.NotFound)
    async def not_found_handler(request: Request, exc: errors.NotFound):
        logger.error("Contact consolidation failed: %s", exc, exc_info=True)
        return _error(500, "Internal server error")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return _error(500, "Internal server error")

    @app.get("/")
    async def root():
        return {"message": "Bitespeed API is up", "version": settings.version}

    @app.post("/identify", response_model=FinalResponse)
    def identify(request: IdentifyRequest):
        email = request.email
        phone = request.phoneNumber

        validate_identify_request(email, phone)

        contact = app.state.resolver.resolve(email, phone)
        return FinalResponse(contact=contact)

    return app


configure_logging(get_settings().log_level)
app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
