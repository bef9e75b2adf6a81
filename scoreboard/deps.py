from fastapi import Request

from .service import ScoreboardService


def get_service(request: Request) -> ScoreboardService:
    # the service is built once at startup and parked on app.state
    return request.app.state.service
