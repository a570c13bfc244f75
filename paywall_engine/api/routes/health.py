from fastapi import APIRouter, Depends, Response

from paywall_engine.api.deps import get_engine
from paywall_engine.engine import PaywallEngine
from paywall_engine.paywall.errors import StateUnavailableError


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, engine: PaywallEngine = Depends(get_engine)) -> dict:
    """Readiness probe - returns 503 if the state store is unavailable."""
    try:
        engine.store.load("__readiness__")
    except StateUnavailableError as e:
        response.status_code = 503
        return {"status": "not_ready", "error": str(e)}
    return {
        "status": "ready",
        "analytics_failed": engine.emitter.failed_count if engine.emitter else 0,
    }
