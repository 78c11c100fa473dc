#!/usr/bin/env python
"""
ASO Bible Admin API - Application Entry Point.

Usage:
    python app.py

Or with uvicorn directly:
    uvicorn app:app --port 8000

Environment:
    DATABASE_URL        SQLAlchemy URL (defaults to local SQLite)
    ASO_BIBLE_HOST      Bind host (default 0.0.0.0)
    ASO_BIBLE_PORT      Bind port (default 8000)
    ASO_BIBLE_*         Engine settings, see aso_bible.config
"""

import os
import sys
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from aso_bible import __version__
from aso_bible.router import router as aso_bible_router


logger = logging.getLogger(__name__)


app = FastAPI(
    title="ASO Bible Admin API",
    description="Registry and scoped override editor for ASO scoring entities.",
    version=__version__,
)

# CORS (Allow local frontend development)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(aso_bible_router)


@app.get("/")
def root():
    return {"status": "ok", "message": "ASO Bible API is running"}


def main():
    """Run the API server."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    host = os.getenv("ASO_BIBLE_HOST", "0.0.0.0")
    port = int(os.getenv("ASO_BIBLE_PORT", os.getenv("PORT", "8000")))

    logger.info(f"Starting ASO Bible API on {host}:{port}")

    try:
        uvicorn.run(app, host=host, port=port, log_level="info", access_log=True)
    except Exception as e:
        logger.error(f"Failed to start API: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
