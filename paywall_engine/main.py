"""
Main FastAPI application for the paywall decision engine.
Serves health, paywall decisions/outcomes, trials, purchases and metrics.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from paywall_engine.api.routes import health, paywall, trials
from paywall_engine.core.config import Settings, get_settings
from paywall_engine.core.logging import configure_logging
from paywall_engine.engine import PaywallEngine
from paywall_engine.paywall.errors import StateConflictError, StateUnavailableError
from paywall_engine.utils.metrics import router as metrics_router


def create_app(settings: Settings | None = None, engine: PaywallEngine | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        app.state.engine = engine or PaywallEngine.from_settings(settings)
        app.state.engine.start()
        try:
            yield
        finally:
            app.state.engine.close()

    app = FastAPI(
        title="Paywall Decision Engine",
        description="Trial, engagement, experiment and offer decisions for paywall presentation",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS
    origins = settings.cors_origins_list or ["http://localhost:3000", "http://127.0.0.1:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StateUnavailableError)
    async def state_unavailable_handler(request: Request, exc: StateUnavailableError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": "state store unavailable"})

    @app.exception_handler(StateConflictError)
    async def state_conflict_handler(request: Request, exc: StateConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": "concurrent update, retry"})

    # Routers
    app.include_router(health.router, tags=["health"])
    app.include_router(paywall.router)
    app.include_router(trials.router)
    app.include_router(metrics_router)
    return app


app = create_app()
