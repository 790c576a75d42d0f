"""Page size caps and pagination response headers for list endpoints."""

from __future__ import annotations

import math
import os
from typing import Optional

from fastapi import Response


DEFAULT_PAGE_SIZE = 20
HARD_MAX_PAGE_SIZE = 100


def max_page_size() -> int:
    # Read per request so operators can lower the cap without a restart.
    try:
        val = int(os.getenv("API_MAX_PAGE_SIZE", str(HARD_MAX_PAGE_SIZE)))
    except ValueError:
        return HARD_MAX_PAGE_SIZE
    return val if val >= 1 else HARD_MAX_PAGE_SIZE


def clamp_page_size(requested: int) -> int:
    return max(1, min(int(requested), max_page_size()))


def page_offset(page: int, page_size: int) -> int:
    return (max(1, page) - 1) * page_size


def set_pagination_headers(
    response: Optional[Response],
    *,
    total: Optional[int],
    page: int,
    page_size: int,
) -> None:
    if response is None:
        return
    response.headers["X-Page"] = str(page)
    response.headers["X-Page-Size"] = str(page_size)
    if total is not None:
        response.headers["X-Total-Count"] = str(total)
        response.headers["X-Total-Pages"] = str(math.ceil(total / page_size) if page_size else 0)
