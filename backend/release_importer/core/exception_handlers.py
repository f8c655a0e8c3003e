"""Map importer exceptions onto HTTP responses."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from release_importer.core.exceptions import (
    ConflictError,
    CsvFormatError,
    InvalidTransitionError,
    MappingError,
    SessionNotFoundError,
    SessionOwnershipError,
    SourceUnavailableError,
    StaleCheckpointError,
    StorageBusyError,
    StorageUnavailableError,
)

BUSY_RETRY_AFTER = 2  # seconds


def register_exception_handlers(app: FastAPI) -> None:
    """Register all importer exception handlers with the FastAPI application."""

    @app.exception_handler(SessionNotFoundError)
    async def handle_not_found(request: Request, exc: SessionNotFoundError):
        return JSONResponse(
            status_code=404,
            content={"error": "Not Found", "message": exc.message},
        )

    @app.exception_handler(SessionOwnershipError)
    async def handle_ownership(request: Request, exc: SessionOwnershipError):
        return JSONResponse(
            status_code=403,
            content={"error": "Forbidden", "message": exc.message},
        )

    @app.exception_handler(ConflictError)
    async def handle_conflict(request: Request, exc: ConflictError):
        return JSONResponse(
            status_code=409,
            content={
                "error": "Active Session Exists",
                "message": exc.message,
                "active_session_id": exc.active_session_id,
            },
        )

    @app.exception_handler(InvalidTransitionError)
    async def handle_transition(request: Request, exc: InvalidTransitionError):
        return JSONResponse(
            status_code=409,
            content={"error": "Invalid Transition", "message": exc.message},
        )

    @app.exception_handler(StaleCheckpointError)
    async def handle_stale(request: Request, exc: StaleCheckpointError):
        return JSONResponse(
            status_code=409,
            content={
                "error": "Stale Checkpoint",
                "message": exc.message,
                "expected_checkpoint": exc.expected,
                "current_checkpoint": exc.actual,
            },
        )

    @app.exception_handler(SourceUnavailableError)
    async def handle_source(request: Request, exc: SourceUnavailableError):
        return JSONResponse(
            status_code=409,
            content={"error": "Source Unavailable", "message": exc.message},
        )

    @app.exception_handler(MappingError)
    async def handle_mapping(request: Request, exc: MappingError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid Mapping", "message": exc.message},
        )

    @app.exception_handler(CsvFormatError)
    async def handle_csv(request: Request, exc: CsvFormatError):
        return JSONResponse(
            status_code=400,
            content={"error": "CSV Processing Failed", "message": exc.message},
        )

    @app.exception_handler(StorageUnavailableError)
    async def handle_storage(request: Request, exc: StorageUnavailableError):
        return JSONResponse(
            status_code=503,
            content={"error": "Storage Unavailable", "message": exc.message},
        )

    @app.exception_handler(StorageBusyError)
    async def handle_busy(request: Request, exc: StorageBusyError):
        return JSONResponse(
            status_code=503,
            content={"error": "Storage Busy", "message": exc.message},
            headers={"Retry-After": str(BUSY_RETRY_AFTER)},
        )
