from fastapi import Request

from paywall_engine.engine import PaywallEngine


def get_engine(request: Request) -> PaywallEngine:
    """Engine instance created in the application lifespan."""
    return request.app.state.engine
