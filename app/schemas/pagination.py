from pydantic import BaseModel


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool

    @classmethod
    def for_page(cls, *, total: int, limit: int, offset: int, returned: int) -> "Pagination":
        return cls(
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + returned < total,
        )


def clamp_page_size(limit: int | None, *, default: int, maximum: int) -> int:
    """Page size requested by the caller, bounded by the configured maximum."""
    return min(limit or default, maximum)
