"""
FundsAgent HTTP application.

Builds the FastAPI app and wires the stores, reasoning backends and
services that every request shares.
"""

import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
import structlog
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fundsagent.config.settings import ApplicationSettings, settings
from fundsagent.clients.cosmos_client import CosmosDBClient
from fundsagent.clients.llm_client import ChatCompletionClient
from fundsagent.exceptions import AuthorizationError, ConversationNotFound
from fundsagent.repositories.access_repository import CosmosAccessRepository
from fundsagent.repositories.conversation_repository import CosmosConversationRepository
from fundsagent.repositories.sales_repository import CosmosSalesDataRepository
from fundsagent.repositories.sample_data import build_sample_repositories
from fundsagent.services.access_service import AccessService
from fundsagent.services.chat_service import ChatService
from fundsagent.services.conversation_service import ConversationService
from fundsagent.services.engine_coordinator import AnalysisEngine, EngineCoordinator, ToolLoopEngine
from fundsagent.services.query_guard import QueryGuard
from fundsagent.services.stream_adapter import StreamAdapter
from fundsagent.services.tool_registry import build_tool_registry
from fundsagent.routes.chat import router as chat_router
from fundsagent.routes.health import router as health_router

# structlog output: console in debug, JSON otherwise
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        min_level=getattr(logging, settings.telemetry.log_level.upper(), logging.INFO)
    ),
    logger_factory=structlog.WriteLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


class ApplicationState:
    """Process-wide clients, repositories and services."""

    def __init__(self):
        # Clients
        self.cosmos_client: CosmosDBClient = None
        self.llm_client: ChatCompletionClient = None
        self.engine_clients: dict = {}

        # Repositories
        self.sales_repository = None
        self.access_repository = None
        self.conversation_repository = None

        # Services
        self.access_service: AccessService = None
        self.conversation_service: ConversationService = None
        self.tool_registry = None
        self.chat_service: ChatService = None
        self.engine_coordinator: EngineCoordinator = None


app_state = ApplicationState()


def initialize_state(state: ApplicationState, config: ApplicationSettings) -> ApplicationState:
    """Wire clients, repositories and services into `state`."""
    if config.use_cosmos:
        state.cosmos_client = CosmosDBClient(config.cosmos_db)
        state.sales_repository = CosmosSalesDataRepository(state.cosmos_client, config.cosmos_db)
        state.access_repository = CosmosAccessRepository(state.cosmos_client, config.cosmos_db)
        state.conversation_repository = CosmosConversationRepository(state.cosmos_client, config.cosmos_db)
        logger.info("Using Cosmos DB stores", database=config.cosmos_db.database_name)
    else:
        sales, access, conversations = build_sample_repositories()
        state.sales_repository = sales
        state.access_repository = access
        state.conversation_repository = conversations
        logger.info("Using in-memory stores seeded with sample data")

    state.llm_client = ChatCompletionClient(config.openai)
    state.engine_clients = {
        config.deepseek.engine_id: ChatCompletionClient(config.deepseek),
        config.xai.engine_id: ChatCompletionClient(config.xai),
    }

    state.access_service = AccessService(state.sales_repository, state.access_repository, config.access)
    state.conversation_service = ConversationService(state.conversation_repository, config.agents)
    state.tool_registry = build_tool_registry(
        state.sales_repository, state.access_service, QueryGuard(config.access)
    )
    adapter = StreamAdapter(config.stream)
    state.chat_service = ChatService(
        state.llm_client,
        state.tool_registry,
        state.access_service,
        state.conversation_service,
        adapter,
        config.agents,
    )
    engine2 = state.engine_clients[config.deepseek.engine_id]
    engine3 = state.engine_clients[config.xai.engine_id]
    state.engine_coordinator = EngineCoordinator(
        {
            engine2.engine_id: ToolLoopEngine(engine2, adapter, state.tool_registry, config.agents),
            engine3.engine_id: AnalysisEngine(engine3, adapter),
        },
        state.conversation_service,
        adapter,
        config.agents,
    )
    return state


async def shutdown_state(state: ApplicationState) -> None:
    clients = [state.llm_client, *state.engine_clients.values()]
    for client in clients:
        if client:
            await client.close()
    if state.cosmos_client:
        await state.cosmos_client.close()
        logger.info("Released Cosmos store")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build shared state on startup and release upstream clients on shutdown.

    Missing upstream credentials never block startup; the affected backend
    answers with a degraded response instead.
    """
    logger.info("Starting FundsAgent application", version=settings.version, environment=settings.environment)
    initialize_state(app_state, settings)
    logger.info(
        "Application startup completed",
        primary_configured=app_state.llm_client.is_configured,
        engines={k: c.is_configured for k, c in app_state.engine_clients.items()},
    )

    yield

    logger.info("Shutting down FundsAgent application")
    try:
        await shutdown_state(app_state)
        logger.info("Shutdown complete")
    except Exception as e:
        logger.error("Shutdown failed", error=str(e))


def create_app() -> FastAPI:
    """
    Build the FundsAgent FastAPI app.

    Returns:
        The app with middleware, routers and error handlers attached
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        description="FundsAgent sales performance assistant",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    configure_middleware(app)
    configure_routes(app)
    configure_exception_handlers(app)

    logger.info(
        "FundsAgent app created",
        app_name=settings.app_name,
        version=settings.version,
        debug=settings.debug,
    )
    return app


def configure_middleware(app: FastAPI) -> None:
    """CORS and per-request logging."""
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )
        logger.info("CORS enabled", origins=settings.cors_origins)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.perf_counter()
        request_id = str(uuid.uuid4())[:8]
        logger.info("Request received", request_id=request_id, method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request raised",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration_ms=int((time.perf_counter() - start_time) * 1000),
            )
            raise
        logger.info(
            "Request finished",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=int((time.perf_counter() - start_time) * 1000),
        )
        return response


def configure_routes(app: FastAPI) -> None:
    """Mount the health and agent routers."""
    app.include_router(health_router, prefix="/health", tags=["health"])
    app.include_router(chat_router, prefix=settings.api_prefix, tags=["agent"])
    logger.info("Routers mounted", api_prefix=settings.api_prefix)


def _error(status_code: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": status_code, "message": message, "type": error_type}},
    )


def configure_exception_handlers(app: FastAPI) -> None:
    """Map domain errors onto the JSON error envelope."""

    @app.exception_handler(AuthorizationError)
    async def authorization_error_handler(request: Request, exc: AuthorizationError):
        status_code = 403 if exc.identified else 401
        logger.warning("Authorization failed", status_code=status_code, message=exc.message, path=request.url.path)
        return _error(status_code, exc.message, "authorization_error")

    @app.exception_handler(ConversationNotFound)
    async def conversation_not_found_handler(request: Request, exc: ConversationNotFound):
        logger.info("Conversation not found", conversation_id=exc.conversation_id)
        return _error(404, str(exc), "not_found")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
        return _error(exc.status_code, exc.detail, "http_exception")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Request crashed",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            traceback=traceback.format_exc(),
        )
        return _error(500, str(exc) if settings.debug else "Internal server error", "internal_error")


app = create_app()
