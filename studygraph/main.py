from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from studygraph import __version__
from studygraph.api.v1.api_router import v1_router
from studygraph.api.v1.errors import ApiError, api_error_exception_handler, error_body
from studygraph.core.settings import settings
from studygraph.infrastructure.container import GenerationContainer
from studygraph.infrastructure.observability.correlation import CorrelationMiddleware
from studygraph.infrastructure.observability.logger_config import configure_structlog

# Configure Structlog (JSON Logging)
configure_structlog()
logger = structlog.get_logger(__name__)


def create_app(container: Optional[GenerationContainer] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.container = container or GenerationContainer()
        logger.info(
            "service_started",
            environment=settings.ENVIRONMENT,
            llm_proxy_configured=bool(settings.LLM_PROXY_URL),
            model=settings.GRAPH_GENERATION_MODEL,
        )
        try:
            yield
        finally:
            await app.state.container.aclose()

    app = FastAPI(
        title="StudyGraph Knowledge Graph API",
        description="Turns study material into a knowledge graph of concepts and prerequisites.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(CorrelationMiddleware)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_contract_breach",
            endpoint=str(request.url.path),
            validation_errors=exc.errors(),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=error_body("REQUEST_CONTRACT_BREACH", "Request validation failed", jsonable_encoder(exc.errors())),
        )

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return await api_error_exception_handler(request, exc)

    app.include_router(v1_router)

    @app.get("/health")
    def health_check():
        """
        Service health check.
        """
        return {"status": "ok", "service": "studygraph", "api_v1": "available"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.API_PORT)
