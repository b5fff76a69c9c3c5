"""
LedgerGuard - security core of a personal finance API

Field-level encryption of PII and amounts, refresh token rotation, CSRF
protection, rate limiting and a hash-chained audit log, served with FastAPI.
"""

__version__ = "0.1.0"

from .main import app

__all__ = ["app"]
