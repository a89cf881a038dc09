"""
ExamFlow Backend - Main FastAPI Application

Submission pipeline for online exams: scores submissions interactively,
queues them when that is not possible, and drains the queue in batches.
Version: 1.0
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

# Settings read the environment at import time
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient

from examflow.config.settings import settings
from examflow.routes.monitoring_routes import create_monitoring_routes
from examflow.routes.queue_routes import create_queue_routes
from examflow.routes.submission_routes import create_submission_routes
from examflow.services import ExamPipeline

# Setup logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(pipeline: Optional[ExamPipeline] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        pipeline: Prebuilt pipeline. When omitted, one is built at startup
            from a Motor client connected to ``settings.MONGODB_URL``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan context manager for startup/shutdown."""
        # STARTUP
        logger.info("🚀 ExamFlow Backend Starting Up...")
        client = None

        if pipeline is None:
            try:
                settings.validate()
                logger.info("✅ Settings validated")

                client = AsyncIOMotorClient(
                    settings.MONGODB_URL,
                    maxPoolSize=50,
                    serverSelectionTimeoutMS=5000
                )
                await client.server_info()
                logger.info(f"✅ Connected to MongoDB: {settings.DATABASE_NAME}")

                app.state.pipeline = ExamPipeline(client[settings.DATABASE_NAME], settings)
                _include_routes(app, app.state.pipeline)

            except Exception as e:
                logger.error(f"❌ Startup failed: {e}")
                raise

        await app.state.pipeline.start()
        logger.info("✅ Application startup complete")

        yield

        # SHUTDOWN
        logger.info("🛑 Shutting down...")
        await app.state.pipeline.stop()
        if client is not None:
            client.close()
            logger.info("✅ Database connection closed")

    app = FastAPI(
        title="ExamFlow API",
        description="Online exam submission pipeline",
        version=VERSION,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        current = getattr(app.state, "pipeline", None)
        return {
            "status": "healthy",
            "version": VERSION,
            "pipeline": "started" if current is not None and current.started else "stopped"
        }

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "app": "ExamFlow",
            "version": VERSION,
            "docs": "/docs",
            "health": "/api/health"
        }

    if pipeline is not None:
        app.state.pipeline = pipeline
        _include_routes(app, pipeline)

    return app


def _include_routes(app: FastAPI, pipeline: ExamPipeline):
    """Setup all API routes."""
    app.include_router(create_submission_routes(pipeline))
    app.include_router(create_queue_routes(pipeline))
    app.include_router(create_monitoring_routes(pipeline))
    logger.info("✅ Routes registered")


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
