# billing/__init__.py
"""
Invoice lifecycle and payment ledger.

The FastAPI application is re-exported so the service can be run with:
    uvicorn billing:app --reload
"""

from .main import app

__all__ = ["app"]
