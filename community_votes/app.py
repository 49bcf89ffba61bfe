"""
Community Votes API Service - FastAPI Application.

REST API around the community voting and caching engine of the
fact-checking platform.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from community_votes.config import Settings, get_settings
from community_votes.database import create_db_engine, init_db, make_session_factory
from community_votes.engine import VoteEngine
from community_votes.errors import VoteEngineError
from community_votes.reconciliation_service import ReconciliationService
from community_votes.routes import posts_router, stats_router, votes_router
from community_votes.scheduler import ReconciliationScheduler
from community_votes.store import SqlAlchemyStore


logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application; one engine per application instance."""
    settings = settings or get_settings()

    # Configure logging
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        # Startup
        logger.info("Starting Community Votes API Service...")
        db_engine = create_db_engine(settings.database_url, echo=settings.debug)
        init_db(db_engine)
        logger.info("Database initialized")

        store = SqlAlchemyStore(make_session_factory(db_engine))
        engine = VoteEngine(store, settings)
        reconciliation = ReconciliationScheduler(ReconciliationService(store), engine)
        if settings.enable_scheduler:
            reconciliation.start()

        app.state.engine = engine
        app.state.reconciliation = reconciliation

        yield

        # Shutdown
        logger.info("Shutting down Community Votes API Service...")
        reconciliation.stop()
        db_engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        description="""
## Community Votes API

Community trust voting for links submitted to the fact-checking platform.

### Key Concepts

- **Posts**: Links submitted for review
- **Votes**: One vote per user per post: trusted, suspicious or untrusted
- **Consensus**: Trusted or untrusted once a category reaches 60% of
  votes, otherwise suspicious; unknown with no votes

### Caching

Post listings (first page) and community stats are cached in memory for a
few minutes. Any vote drops those cached entries, so the next read is
fresh.
        """,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # Configure CORS
    origins = settings.allowed_origins.split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(VoteEngineError)
    async def engine_error_handler(request: Request, exc: VoteEngineError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": exc.message},
        )

    # Include routers
    app.include_router(posts_router, prefix="/api")
    app.include_router(votes_router, prefix="/api")
    app.include_router(stats_router, prefix="/api")

    # Root endpoint
    @app.get("/")
    def root():
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "description": "Community Votes API",
            "docs_url": "/docs",
            "openapi_url": "/openapi.json",
            "endpoints": {
                "posts": "/api/posts",
                "votes": "/api/posts/{post_id}/votes",
                "stats": "/api/stats",
                "health": "/api/health",
            }
        }

    # Health check at root level too
    @app.get("/health")
    def root_health():
        """Quick health check."""
        return {"status": "ok", "version": settings.app_version}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "community_votes.app:app",
        host="0.0.0.0",
        port=8001,
        reload=get_settings().debug
    )
