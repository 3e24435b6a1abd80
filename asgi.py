"""
asgi.py -- ASGI entry point for LibraryAuth.

api/main.py builds the application; this module only re-exports it under the
name process managers expect.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
