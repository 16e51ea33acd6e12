"""Shared route dependencies."""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status
from pydantic import ValidationError

from taskflow.errors import MutationError
from taskflow.services.data_facade import DataFacade

logger = logging.getLogger(__name__)


def get_facade(request: Request) -> DataFacade:
    """The facade built by the app lifespan."""
    facade = getattr(request.app.state, "facade", None)
    if facade is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Replica not started.")
    return facade


def mutation_failed(e: MutationError) -> HTTPException:
    """Map a failed write: bad input is 422, a store failure is 502."""
    if isinstance(e.cause, ValidationError):
        return HTTPException(status_code=422, detail=str(e.cause))
    logger.warning("routes: %s", e)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


def accepted(record: dict | None = None) -> dict:
    """202 body. The replica picks the change up from the feed."""
    body: dict = {"status": "accepted"}
    if record is not None:
        body["record"] = record
    return body
