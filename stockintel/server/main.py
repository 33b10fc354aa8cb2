"""
HTTP server exposing the intelligence pipeline (FastAPI).
"""
import os
import time
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from stockintel.config import DEFAULT_CONFIG_PATH, load_config, validate_config
from stockintel.credentials import CredentialProvider
from stockintel.logging_utils import setup_logging_from_config
from stockintel.models import IntelligenceSource
from stockintel.pipeline import AnalysisPipeline
from stockintel.server.routes import make_router

VERSION = "0.1.0"


def make_app(
    config: Optional[Dict[str, Any]] = None,
    credentials: Optional[CredentialProvider] = None
) -> FastAPI:
    if config is None:
        config_path = os.environ.get("STOCKINTEL_CONFIG", DEFAULT_CONFIG_PATH)
        config = load_config(config_path if os.path.exists(config_path) else None)
        validate_config(config)
        setup_logging_from_config(config)

    pipeline = AnalysisPipeline(config, credentials)

    app = FastAPI(
        title="Stock Intelligence",
        version=VERSION,
        description="Multi-source stock intelligence aggregation and scenario synthesis",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get('server', {}).get('cors_origins', ["http://localhost", "http://127.0.0.1"]),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(make_router(pipeline))
    app.state.pipeline = pipeline

    @app.get("/health")
    async def health():
        available = pipeline.aggregator.available_sources()
        return {
            "status": "healthy",
            "version": VERSION,
            "available_sources": [s.value for s in available],
            "missing_sources": [s.value for s in IntelligenceSource if s not in available],
            "synthesis_available": pipeline.synthesis.is_available(),
            "estimated_analysis_cost": pipeline.synthesis.estimated_cost(),
            "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
        }

    logger.info("Stock intelligence server initialized")
    return app


def main():
    try:
        logger.info("=" * 80)
        logger.info("Starting Stock Intelligence Server")
        logger.info("=" * 80)
        app = make_app()
        server_config = app.state.pipeline.config.get('server', {})
        uvicorn.run(
            app,
            host=server_config.get('host', '127.0.0.1'),
            port=int(server_config.get('port', 8000)),
            log_level="info",
        )
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        raise


if __name__ == "__main__":
    main()
