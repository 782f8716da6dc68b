"""Exact-match search over encrypted collection names and dot labels."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies import get_search_service, require_user
from app.exceptions import InvalidArgumentError, PrivacyError
from app.services.records import ENCRYPTED_COLUMNS
from app.services.search import SearchService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search", tags=["search"])


@router.get("/{table}")
def search(
    table: str,
    q: str = Query(..., min_length=1, max_length=500),
    user_id: str = Depends(require_user),
    search_service: SearchService = Depends(get_search_service),
) -> dict:
    """Return ids of the caller's rows whose text equals ``q`` (case-insensitive)."""
    if table not in ENCRYPTED_COLUMNS:
        raise HTTPException(status_code=404, detail="Unknown table")
    try:
        result = search_service.find_ids(table, user_id, q)
    except InvalidArgumentError:
        raise HTTPException(status_code=422, detail="Invalid search request")
    except PrivacyError:
        logger.exception("Search failed for user %s", user_id)
        raise HTTPException(status_code=500, detail="Unable to process request")
    return {
        "ids": result.ids,
        "scheme": result.scheme,
        "total": len(result.ids),
    }
