"""FastAPI dependency injection helpers."""

from fastapi import Request

from src.container import Services


def get_services(request: Request) -> Services:
    """The process-wide service container built by the app lifespan."""
    return request.app.state.services
