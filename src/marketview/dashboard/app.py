"""FastAPI application factory for the chart data API."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from marketview.dashboard.routes import api


def create_dashboard_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to open the cache backend and HTTP client and
                  to attach ``market_data``, ``throttle`` and ``resolver`` to
                  ``app.state``.

    Returns:
        Configured FastAPI application with the JSON routes registered.
    """
    app = FastAPI(
        title="Trade Chart Data API",
        lifespan=lifespan,
    )

    # Wired by main.py lifespan (or directly by tests)
    app.state.market_data = None
    app.state.throttle = None
    app.state.resolver = None
    app.state.cache_backend = "memory"

    app.include_router(api.router, prefix="/api")

    return app
