"""Standardized API response helpers.

All list endpoints return a consistent envelope:
    {"items": [...], "total": <int>}
"""

from typing import Any, Iterable, Optional, Type

from pydantic import BaseModel


def list_response(
    items: Iterable[Any],
    schema: Optional[Type[BaseModel]] = None,
    total: Optional[int] = None,
) -> dict:
    """Wrap a list in the standard envelope.

    Args:
        items: ORM objects, engine records or already serialized dicts.
        schema: Response model each item is validated through (attributes
            allowed) and dumped in JSON mode; omit for serialized items.
        total: Total count (defaults to len(items) when the full list is returned).

    Returns:
        {"items": items, "total": total}
    """
    if schema is not None:
        items = [schema.model_validate(item, from_attributes=True).model_dump(mode="json") for item in items]
    else:
        items = list(items)
    return {
        "items": items,
        "total": total if total is not None else len(items),
    }
