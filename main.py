"""
Main entry point for the file server.
"""

import logging

import uvicorn

from src.config import Settings

if __name__ == "__main__":
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(
        "src.app.api:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
    )
