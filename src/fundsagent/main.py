"""
Main entry point for the FundsAgent service.

Exposes the ASGI application for deployment and runs it with uvicorn when
executed directly.
"""

import uvicorn

from fundsagent.app import app
from fundsagent.config.settings import settings

__all__ = ["app"]


def run() -> None:
    uvicorn.run(
        "fundsagent.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.telemetry.log_level.lower(),
    )


if __name__ == "__main__":
    run()
