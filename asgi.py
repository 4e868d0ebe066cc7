"""
asgi.py -- ASGI entry point for QC Guard.

The dashboard UI is a separate client; this process serves only the identity
API from api/main.py. Keeping the import here lets servers address the app as
asgi:app regardless of how api/ is organized.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
