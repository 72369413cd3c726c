"""HTTP and SSE surface of codeseek."""

from .app import create_app

__all__ = ["create_app"]
