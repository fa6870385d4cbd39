"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .config import EngineConfig, get_config, validate_config
from .core.builtin_executors import build_default_registry
from .core.execution_engine import ExecutionEngine
from .core.executor_registry import NodeExecutorRegistry
from .core.logging import setup_logging, get_logger
from .core.middleware import (
    ErrorHandlingMiddleware,
    PerformanceMonitoringMiddleware,
    RequestLoggingMiddleware,
)
from .core.monitoring import MonitoringAggregator
from .core.websocket_manager import WebSocketManager
from .models.core import utcnow
from .api.endpoints import router, init_dependencies


logger = get_logger(__name__)


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[EngineConfig] = None
        self.registry: Optional[NodeExecutorRegistry] = None
        self.monitor: Optional[MonitoringAggregator] = None
        self.websocket_manager: Optional[WebSocketManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None

    @property
    def ready(self) -> bool:
        return self.execution_engine is not None and self.registry is not None


# Global application state
app_state = ApplicationState()


def initialize_core_components(config: EngineConfig) -> ApplicationState:
    """Build the engine, its default registry, the monitor and the broadcaster."""
    monitor = MonitoringAggregator(history_limit=config.monitor_history_limit)
    registry = build_default_registry(NodeExecutorRegistry(max_workers=config.executor_threads))
    websocket_manager = WebSocketManager(max_connections=config.websocket_max_connections)
    execution_engine = ExecutionEngine(
        monitor=monitor,
        default_options=config.to_run_options(),
        max_concurrent_runs=config.max_concurrent_runs,
    )

    app_state.config = config
    app_state.registry = registry
    app_state.monitor = monitor
    app_state.websocket_manager = websocket_manager
    app_state.execution_engine = execution_engine

    init_dependencies(
        execution_engine=execution_engine,
        registry=registry,
        monitor=monitor,
        websocket_manager=websocket_manager,
    )
    logger.info(f"Core components initialized with executors: {', '.join(registry.list_executors())}")
    return app_state


async def graceful_shutdown(state: ApplicationState) -> None:
    """Handle graceful shutdown of application components."""
    logger.info("Shutting down workflow engine")

    if state.execution_engine is not None:
        try:
            await state.execution_engine.shutdown()
        except Exception as e:
            logger.error(f"Error during execution engine shutdown: {e}", exc_info=True)

    if state.websocket_manager is not None:
        await state.websocket_manager.stop_broadcast_processor()

    if state.registry is not None:
        state.registry.shutdown()


def create_lifespan_handler(config: EngineConfig):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        state = initialize_core_components(config)
        state.websocket_manager.start_broadcast_processor()
        logger.info("Application startup completed successfully")

        try:
            yield
        finally:
            await graceful_shutdown(state)

    return lifespan


def create_app(config: Optional[EngineConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Execution engine for visual workflow graphs",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)
    # Added last so it wraps every other middleware.
    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: EngineConfig) -> None:
    """Add health check endpoints to the application."""
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {"status": "healthy", "service": service, "version": config.app_version}

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check endpoint for container orchestration."""
        ready = app_state.ready
        content = {"ready": ready, "timestamp": utcnow().isoformat()}
        if ready:
            content["active_runs"] = len(app_state.execution_engine.get_active_runs())
            content["executors"] = sorted(app_state.registry.list_executors())
        return JSONResponse(status_code=200 if ready else 503, content=content)

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {"alive": True, "timestamp": utcnow().isoformat()}


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
