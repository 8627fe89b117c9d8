"""
FastAPI Dependencies for the Framing Service

Provides dependency injection for:
- Owner identity (X-Owner-Id header, set by the upstream auth layer)
- Pipeline enqueue function (overridable in tests)
"""

from typing import Optional

from fastapi import Header, HTTPException

from src.pipeline.dispatcher import Enqueue, default_enqueue


def get_owner_id(x_owner_id: Optional[str] = Header(default=None)) -> str:
    """Owner identity. Authentication happens upstream; it is not verified here."""
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return x_owner_id.strip()


def get_enqueuer() -> Enqueue:
    """How pipeline runs are handed to the worker."""
    return default_enqueue
