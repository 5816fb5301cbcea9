from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class PageMeta:
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "totalPages": self.total_pages,
            "currentPage": self.page,
            "pageSize": self.page_size,
            "hasNextPage": self.page < self.total_pages,
            "hasPreviousPage": self.page > 1,
        }


def paginate(session: Session, stmt: Select[Any], *, page: int, limit: int) -> tuple[list[Any], PageMeta]:
    """Run ``stmt`` for one page and count the rows matched by the same predicate.

    ``stmt`` must carry its filters and ordering. The count wraps the statement
    without its ordering as a subquery, so both numbers come from one predicate.
    """
    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total = int(session.scalar(count_stmt) or 0)
    meta = PageMeta(total=total, page=page, page_size=limit)
    rows = session.execute(stmt.limit(limit).offset(meta.offset)).all()
    return list(rows), meta


def page_response(data: list[Any], meta: PageMeta) -> dict[str, Any]:
    return {"success": True, "data": data, "pagination": meta.to_dict()}
