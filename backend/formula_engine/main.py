"""
FastAPI application entry point and endpoint definitions.

This module initializes the FastAPI application and defines all API routes
for the formula synthesis and validation engine.

Responsibilities:
- Initialize FastAPI application with CORS and error handling
- Expose catalog lookup, formula generation (buffered and streamed) and
  formula lifecycle endpoints
- Coordinate service layer calls
- Map domain errors to HTTP status codes
"""

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from typing import List, Optional
import asyncio
import logging

from formula_engine.config import settings
from formula_engine.models.catalog import CatalogEntry, NormalizationResult, NormalizeRequest
from formula_engine.models.formula import (
    Formula,
    FormulaInsights,
    FormulaVersionChange,
    IngredientPopularity,
)
from formula_engine.models.generation import (
    CustomizeFormulaRequest,
    GenerateFormulaRequest,
    GenerationOutcome,
    RenameFormulaRequest,
)
from formula_engine.services.formula_service import FormulaService
from formula_engine.services.formula_store import FormulaNotFoundError, FormulaStore, PersistenceError
from formula_engine.services.formula_validator import FormulaValidator
from formula_engine.services.ingredient_catalog import get_catalog
from formula_engine.services.provider_gateway import (
    ProviderError,
    ProviderFatalError,
    ProviderGateway,
    ProviderTransientError,
    list_models,
)
from formula_engine.utils.helpers import format_sse_event
from formula_engine.utils.validators import validate_capsule_count, validate_user_id

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """
    Initialize and configure the FastAPI application.

    Sets up:
    - CORS middleware for frontend communication
    - Exception handlers for consistent error responses
    - Application metadata

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Formula Synthesis & Validation API",
        description="Generates personalized supplement formulas with an LLM and enforces catalog and dosage rules",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Configure CORS to allow frontend communication
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global exception handler for consistent error responses
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """
        Handle all uncaught exceptions with consistent error format.

        Args:
            request: The incoming request object
            exc: The exception that was raised

        Returns:
            JSONResponse: Formatted error response
        """
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error occurred",
                "error": str(exc)
            }
        )

    return app


# Initialize FastAPI application
app = create_app()

# Initialize service layer instances
formula_store = FormulaStore(settings.FORMULA_DB_PATH)
formula_validator = FormulaValidator(
    capsule_capacity_mg=settings.CAPSULE_CAPACITY_MG,
    default_capsule_count=settings.DEFAULT_CAPSULE_COUNT,
)
provider_gateway = ProviderGateway.from_settings(settings)
formula_service = FormulaService(
    provider_gateway,
    formula_store,
    validator=formula_validator,
    repair_enabled=settings.ENABLE_REPAIR_RETRY,
    default_capsule_count=settings.DEFAULT_CAPSULE_COUNT,
)


def _http_error(action: str, exc: Exception) -> HTTPException:
    """
    Translate a domain exception into an HTTPException.

    ValueError -> 400, FormulaNotFoundError -> 404, ProviderFatalError -> 502,
    ProviderTransientError -> 503, anything else -> 500.
    """
    if isinstance(exc, FormulaNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, ProviderTransientError):
        logger.error(f"{action}: provider unavailable: {exc}")
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The AI provider is temporarily unavailable. Please try again shortly."
        )
    if isinstance(exc, ProviderFatalError):
        logger.error(f"{action}: provider rejected request: {exc} (status {exc.status_code})")
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="The AI provider rejected the request."
        )

    logger.error(f"Error during {action}: {str(exc)}", exc_info=True)
    if isinstance(exc, PersistenceError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save formula changes"
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(exc)}"
    )


def _require_formula(formula: Optional[Formula], description: str) -> Formula:
    if formula is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{description} not found"
        )
    return formula


@app.get("/")
async def root():
    """
    Root endpoint for health check.

    Returns:
        dict: API status and version information
    """
    return {
        "message": "Formula Synthesis & Validation API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and deployment.

    Returns:
        dict: Service status, active provider and catalog version
    """
    api_key_configured = bool(
        settings.ANTHROPIC_API_KEY if provider_gateway.provider_name == "anthropic" else settings.OPENAI_API_KEY
    )

    warnings = []
    if not api_key_configured:
        warnings.append(f"API key for {provider_gateway.provider_name} not configured - generation will fail")

    return {
        "status": "healthy",
        "service": "formula-engine",
        "provider": {
            "name": provider_gateway.provider_name,
            "model": provider_gateway.model,
            "api_key_configured": api_key_configured,
        },
        "catalog_version": get_catalog().version,
        "repair_retry_enabled": formula_service.repair_enabled,
        "warnings": warnings if warnings else None
    }


# ==================== Catalog Endpoints ====================

@app.get("/catalog")
async def get_ingredient_catalog():
    """
    List every approved ingredient.

    Returns:
        dict: Catalog version and entries, System Supports first
    """
    catalog = get_catalog()
    entries: List[CatalogEntry] = [catalog.lookup(name) for name in catalog.names()]
    return {
        "version": catalog.version,
        "count": len(entries),
        "entries": [entry.model_dump(mode="json") for entry in entries],
    }


@app.post("/catalog/normalize", response_model=NormalizationResult)
async def normalize_ingredient(request: NormalizeRequest) -> NormalizationResult:
    """
    Resolve a free-text ingredient name to its catalog name.

    Unresolved names are not an error; ``matched`` is false and
    ``attempted`` shows the cleaned form that was looked up.
    """
    return get_catalog().normalize(request.name)


@app.get("/models")
async def get_models():
    """Known models per provider, plus the active provider and model."""
    return {
        "active_provider": provider_gateway.provider_name,
        "active_model": provider_gateway.model,
        "providers": list_models(),
    }


# ==================== Generation Endpoints ====================

@app.post("/formulas/generate", response_model=GenerationOutcome)
async def generate_formula(request: GenerateFormulaRequest) -> GenerationOutcome:
    """
    Generate, validate and save a formula for the user.

    A validation failure is not an HTTP error: the response has
    ``status: "rejected"`` with the violation list.

    Raises:
        HTTPException: 400 for invalid input, 502/503 for provider failures,
                       500 if the formula could not be saved
    """
    try:
        logger.info(f"Formula generation requested by user {request.user_id}")
        outcome = await formula_service.generate(request)
        logger.info(f"Formula generation for user {request.user_id} finished: {outcome.status}")
        return outcome
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("generate formula", e)


@app.post("/formulas/generate/stream")
async def generate_formula_stream(request: GenerateFormulaRequest):
    """
    Stream formula generation as Server-Sent Events.

    Events:
    - ``text``: incremental model text
    - ``status``: progress notices (e.g. a repair round starting)
    - ``formula``: the accepted, saved formula (terminal)
    - ``rejected``: the final validation failure (terminal)
    - ``error``: provider or storage failure (terminal)

    A client that disconnects mid-stream cancels generation; nothing is saved.
    """
    try:
        validate_user_id(request.user_id)
        validate_capsule_count(request.capsule_count, formula_service.default_capsule_count)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    async def event_generator():
        events = formula_service.stream_generate(request)
        try:
            async for event in events:
                yield format_sse_event(event.type, event.to_payload())
        except ProviderError as e:
            logger.error(f"[SSE] Provider failure for user {request.user_id}: {e}")
            yield format_sse_event("error", {
                "type": "error",
                "message": "The AI provider is unavailable. Please try again.",
                "retriable": isinstance(e, ProviderTransientError),
            })
        except PersistenceError as e:
            logger.error(f"[SSE] Could not save streamed formula for user {request.user_id}: {e}")
            yield format_sse_event("error", {
                "type": "error",
                "message": "Failed to save formula",
                "retriable": True,
            })
        finally:
            await events.aclose()

    response = StreamingResponse(event_generator(), media_type="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


# ==================== Formula Lifecycle Endpoints ====================

@app.get("/users/{user_id}/formulas/current", response_model=Formula)
async def get_current_formula(user_id: str) -> Formula:
    """The user's current (latest non-archived) formula."""
    try:
        validate_user_id(user_id)
        formula = await asyncio.to_thread(formula_store.get_current, user_id)
        return _require_formula(formula, f"Current formula for user '{user_id}'")
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("fetch current formula", e)


@app.get("/users/{user_id}/formulas", response_model=List[Formula])
async def get_formula_history(
    user_id: str,
    include_archived: bool = Query(True, description="Include archived versions")
) -> List[Formula]:
    """All of the user's formulas, newest version first."""
    try:
        validate_user_id(user_id)
        return await asyncio.to_thread(formula_store.history, user_id, include_archived=include_archived)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("fetch formula history", e)


@app.get("/users/{user_id}/formulas/archived", response_model=List[Formula])
async def get_archived_formulas(user_id: str) -> List[Formula]:
    try:
        validate_user_id(user_id)
        return await asyncio.to_thread(formula_store.archived, user_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("fetch archived formulas", e)


@app.get("/users/{user_id}/formulas/versions/{version}", response_model=Formula)
async def get_formula_version(user_id: str, version: int) -> Formula:
    try:
        validate_user_id(user_id)
        return _require_formula(
            await asyncio.to_thread(formula_store.get_by_version, user_id, version),
            f"Formula v{version} for user '{user_id}'"
        )
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("fetch formula version", e)


@app.get("/formulas/{formula_id}", response_model=Formula)
async def get_formula(formula_id: str) -> Formula:
    try:
        formula = await asyncio.to_thread(formula_store.get, formula_id)
        return _require_formula(formula, f"Formula '{formula_id}'")
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("fetch formula", e)


@app.post("/formulas/{formula_id}/archive", response_model=Formula)
async def archive_formula(formula_id: str) -> Formula:
    """Archive a formula. Archiving an already archived formula is a no-op."""
    try:
        return await formula_service.archive(formula_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("archive formula", e)


@app.post("/formulas/{formula_id}/restore", response_model=Formula)
async def restore_formula(formula_id: str) -> Formula:
    """Make an archived formula current again; the present current one is archived."""
    try:
        return await formula_service.restore(formula_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("restore formula", e)


@app.post("/formulas/{formula_id}/customize", response_model=GenerationOutcome)
async def customize_formula(formula_id: str, request: CustomizeFormulaRequest) -> GenerationOutcome:
    """
    Add ingredients to a formula, saving the result as a new version.

    The combined formula is validated like a generated one; a rejection is
    returned with ``status: "rejected"``.
    """
    try:
        return await formula_service.customize(
            formula_id,
            request.added_bases,
            request.added_individuals,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("customize formula", e)


@app.post("/formulas/{formula_id}/rename", response_model=Formula)
async def rename_formula(formula_id: str, request: RenameFormulaRequest) -> Formula:
    try:
        return await formula_service.rename(formula_id, request.name)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("rename formula", e)


@app.get("/formulas/{formula_id}/changes", response_model=List[FormulaVersionChange])
async def get_formula_changes(formula_id: str) -> List[FormulaVersionChange]:
    """Change log for a formula, oldest entry first."""
    try:
        formula = await asyncio.to_thread(formula_store.get, formula_id)
        _require_formula(formula, f"Formula '{formula_id}'")
        return await asyncio.to_thread(formula_store.list_changes, formula_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error("fetch formula changes", e)


# ==================== Analytics Endpoints ====================

@app.get("/analytics/popularity", response_model=List[IngredientPopularity])
async def get_ingredient_popularity(
    limit: int = Query(20, ge=1, le=200, description="Maximum ingredients to return")
) -> List[IngredientPopularity]:
    """Ingredients ranked by how many stored formulas contain them."""
    try:
        popularity = await asyncio.to_thread(formula_store.ingredient_popularity)
        return popularity[:limit]
    except Exception as e:
        raise _http_error("compute ingredient popularity", e)


@app.get("/analytics/insights", response_model=FormulaInsights)
async def get_formula_insights() -> FormulaInsights:
    try:
        return await asyncio.to_thread(formula_store.insights)
    except Exception as e:
        raise _http_error("compute formula insights", e)


if __name__ == "__main__":
    import uvicorn

    # Run the application
    # For development only - use uvicorn command in production
    uvicorn.run(
        "formula_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
