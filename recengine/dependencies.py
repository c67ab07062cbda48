from fastapi import Request

from recengine.engine import RecommendationEngine


def get_engine(request: Request) -> RecommendationEngine:
    """FastAPI dependency — the engine built during application startup."""
    return request.app.state.engine
