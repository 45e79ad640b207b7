"""
Uniform JSON response envelope.

Success:    {"success": true, "message", "data", "meta"?, "timestamp"}
Error:      {"success": false, "message", "error", "code", "details", "timestamp"}
Collections put their pagination block under meta.pagination.
"""

import math
from typing import Any, Dict, Optional

from time_utils import utc_now


def success_response(data: Any = None, message: str = "OK", meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": True,
        "message": message,
        "data": data,
    }
    if meta:
        body["meta"] = meta
    body["timestamp"] = utc_now().isoformat()
    return body


def error_response(
    error: str,
    message: str,
    code: str,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "success": False,
        "message": message,
        "error": error,
        "code": code,
        "details": details or {},
        "timestamp": utc_now().isoformat(),
    }


def pagination_meta(page: int, per_page: int, total: int) -> Dict[str, Any]:
    """
    Build the pagination block for a collection response.

    Args:
        page: 1-based page number that was requested
        per_page: Page size
        total: Total number of records matching the query

    Returns:
        Pagination dictionary; total_pages is 0 for an empty result
    """
    total_pages = math.ceil(total / per_page) if per_page > 0 else 0
    return {
        "current_page": page,
        "per_page": per_page,
        "total": total,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_previous_page": page > 1,
    }


def paginated_response(
    items: Any,
    page: int,
    per_page: int,
    total: int,
    message: str,
    extra_meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"pagination": pagination_meta(page, per_page, total)}
    if extra_meta:
        meta.update(extra_meta)
    return success_response(items, message, meta)
