from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
from datetime import datetime, timezone
import structlog

from .route.threads import router as threads_router
from ...domain.context.context_manager import ContextManager
from ...infrastructure.config.settings import get_logging_settings, get_settings
from ...infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def create_app(manager: Optional[ContextManager] = None) -> FastAPI:
    """Build the HTTP app around a context engine instance"""

    app = FastAPI(title="Relay Agent Context API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.context_manager = manager if manager is not None else ContextManager(settings=get_settings())
    app.include_router(threads_router)

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "threads": len(app.state.context_manager.registry),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


def main():
    import uvicorn

    log_settings = get_logging_settings()
    setup_logging(log_settings.level, log_settings.format, log_settings.service_name)
    logger.info("Starting context API")
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
