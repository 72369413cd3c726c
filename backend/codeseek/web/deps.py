"""Request dependencies."""

from fastapi import Request

from ..service import IndexService


def get_service(request: Request) -> IndexService:
    return request.app.state.service
