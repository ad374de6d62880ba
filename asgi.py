"""
asgi.py -- ASGI entry point for RouteGuard.

Business applications that sit behind the guard include their routers here,
so api/main.py stays independent of them.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
