"""Main FastAPI application for the journey engine."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api.endpoints import router, init_dependencies
from .config import AppConfig, get_config, load_config
from .core.ab_allocator import ABAllocator
from .core.analytics import AnalyticsService
from .core.collaborators import (
    LoggingActionClient,
    LoggingMessagingClient,
    NullAIClient,
    RequestsWebhookClient,
)
from .core.execution_engine import ExecutionEngine
from .core.graph_manager import GraphManager
from .core.logging import setup_logging, get_logger
from .core.scheduler import SweepScheduler
from .core.state_manager import ExecutionStore
from .executors import ExecutorServices, build_default_registry
from .storage.database import create_tables, get_database_engine


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the application; components are wired in the lifespan handler."""
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count,
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} {config.app_version}")

        engine = get_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args(),
        )
        create_tables(engine)
        logger.info("Database tables created")

        graph_manager = GraphManager()
        store = ExecutionStore()
        allocator = ABAllocator(
            graph_manager=graph_manager,
            default_confidence=config.ab_confidence_threshold,
            default_min_sample_size=config.ab_min_sample_size,
        )
        services = ExecutorServices(
            messaging=LoggingMessagingClient(),
            actions=LoggingActionClient(),
            ai=NullAIClient(),
            webhooks=RequestsWebhookClient(),
            allocator=allocator,
            webhook_timeout=config.webhook_timeout,
        )
        scheduler = SweepScheduler(interval=config.scheduler_interval)
        execution_engine = ExecutionEngine(
            graph_manager=graph_manager,
            store=store,
            registry=build_default_registry(),
            services=services,
            scheduler=scheduler,
            config=config,
        )
        scheduler.bind(execution_engine)

        init_dependencies(
            graph_manager=graph_manager,
            execution_engine=execution_engine,
            ab_allocator=allocator,
            analytics=AnalyticsService(graph_manager, store),
        )
        logger.info("Core components initialized")

        scheduler.start()

        yield

        logger.info(f"Shutting down {config.app_name}")
        scheduler.stop()
        execution_engine.shutdown()

    app = FastAPI(
        title=config.app_name,
        description="Executes multi-step contact journeys with delays, branching and A/B splits",
        version=config.app_version,
        debug=config.debug,
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint for health check."""
        return {"message": f"{config.app_name} is running"}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "journey-engine"}

    return app


def run() -> None:
    """Console entry point: load ``.env`` and serve with uvicorn."""
    import uvicorn

    config = load_config()
    uvicorn.run(create_app(config), **config.get_uvicorn_config())


if __name__ == "__main__":
    run()
