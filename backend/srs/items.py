"""Item source port: where card content comes from.

The engine never reads item content; it only passes ``item_id`` through so
the presentation layer can show the item next to its card.
"""

from collections.abc import Mapping
from typing import Any, Protocol


class ItemSource(Protocol):
    def get_item(self, item_id: str) -> Mapping[str, Any] | None:
        """Return the item payload (id, text, answer, ...) or None if unknown."""
        ...


class InMemoryItemSource:
    """Dict-backed item source for the CLI and tests."""

    def __init__(self, items: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._items: dict[str, Mapping[str, Any]] = dict(items or {})

    def add(self, item_id: str, **fields: Any) -> None:
        self._items[item_id] = {"id": item_id, **fields}

    def get_item(self, item_id: str) -> Mapping[str, Any] | None:
        return self._items.get(item_id)
