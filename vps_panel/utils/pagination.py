# vps_panel/utils/pagination.py
import math
from typing import Any, Dict, List

from vps_panel.services.exceptions import InvalidRangeError

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


def normalize_page(page: int = 1, limit: int = DEFAULT_LIMIT):
    """page/limit을 검증하고 (page, limit, offset) 튜플을 반환합니다."""
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise InvalidRangeError(f"'page' must be a positive integer, got {page!r}.")
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1 or limit > MAX_LIMIT:
        raise InvalidRangeError(f"'limit' must be between 1 and {MAX_LIMIT}, got {limit!r}.")
    return page, limit, (page - 1) * limit


def build_page(items: List[Any], total_count: int, page: int, limit: int) -> Dict[str, Any]:
    """목록 응답에 공통으로 쓰이는 페이지 봉투(envelope)를 만듭니다."""
    return {
        "items": items,
        "total_count": total_count,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total_count / limit) if total_count else 0,
        "has_next": page * limit < total_count,
        "has_prev": page > 1,
    }
