"""Shape detection for inconsistently structured platform payloads.

Collections from the dialer API arrive as a single object, an array, or an
array wrapped in another array depending on the endpoint and result count.
Payloads are classified once at the API boundary into ``Unknown``,
``Single`` or ``Many`` and downstream code only ever sees a flat list.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Union

from engagesync.services.parsers import parse_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unknown:
    """Missing or unrecognised payload."""

    raw: Any = None

    def items(self) -> list[dict]:
        return []


@dataclass(frozen=True)
class Single:
    """A lone object standing in for a one-element collection."""

    item: dict

    def items(self) -> list[dict]:
        return [self.item]


@dataclass(frozen=True)
class Many:
    """A proper collection of objects."""

    values: list[dict] = field(default_factory=list)

    def items(self) -> list[dict]:
        return list(self.values)


Shape = Union[Unknown, Single, Many]


def detect_shape(value: Any) -> Shape:
    """Classify a collection payload. Non-object elements are dropped."""
    if isinstance(value, dict):
        return Single(value) if value else Unknown(value)

    if isinstance(value, list):
        flat: list[dict] = []
        for element in value:
            # Array-of-arrays: flatten one level
            if isinstance(element, list):
                flat.extend(e for e in element if isinstance(e, dict))
            elif isinstance(element, dict):
                flat.append(element)
        return Many(flat)

    return Unknown(value)


def dig(payload: Any, path: tuple[str, ...]) -> Any:
    """Follow a key path through nested dicts, None when any hop is missing."""
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def extract_items(payload: Any, *paths: tuple[str, ...]) -> list[dict]:
    """
    Return the first recognisable collection found along ``paths``.

    A path whose target is a pagination wrapper rather than an item is
    skipped in favour of later candidates.
    """
    for path in paths:
        shape = detect_shape(dig(payload, path))
        if isinstance(shape, Unknown):
            continue
        if isinstance(shape, Single) and _looks_like_wrapper(shape.item):
            continue
        return shape.items()

    keys = sorted(payload.keys()) if isinstance(payload, dict) else type(payload).__name__
    logger.debug(f"No collection found along {paths}; payload keys: {keys}")
    return []


_PAGINATION_KEYS = {"page", "page_size", "total_pages", "total_results", "pageInfo"}


def _looks_like_wrapper(item: dict) -> bool:
    return any(k in _PAGINATION_KEYS for k in item)


def page_info(payload: Any, *paths: tuple[str, ...]) -> tuple[int | None, int | None]:
    """Return ``(total_pages, total_results)`` from the first wrapper that has them."""
    for path in paths:
        wrapper = dig(payload, path)
        if isinstance(wrapper, dict):
            total_pages = parse_int(wrapper.get("total_pages"))
            total_results = parse_int(wrapper.get("total_results"))
            if total_pages is not None or total_results is not None:
                return total_pages, total_results
    return None, None
