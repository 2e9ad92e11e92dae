"""
Shopping cart state container

The cart is an ordered list of lines, at most one per product id. Every
mutation writes the full cart to a key-value blob storage so it survives a
reload, and notifies an optional listener with a CartEvent for messaging.

Snapshots are stored as a versioned envelope::

    {"version": 1, "items": [{...CartItem...}, ...]}

Older snapshots that are a bare list of items are migrated on read.
"""

import json
import os
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from schemas import CartItem

logger = structlog.get_logger(__name__)

CART_STORAGE_KEY = "shophub-cart"
CART_SNAPSHOT_VERSION = 1


class CartEvent(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    CLEARED = "cleared"


CartListener = Callable[[CartEvent, Optional[CartItem]], None]


# ----------------------------------------------------------------------------
# Blob storage
# ----------------------------------------------------------------------------

class BlobStorage(ABC):
    """Key-value storage for serialized snapshots."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...


class MemoryBlobStorage(BlobStorage):

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class FileBlobStorage(BlobStorage):
    """One file per key inside a directory."""

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory or os.getenv("CART_STORAGE_DIR", ".shophub"))

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(key).write_text(value, encoding="utf-8")


# ----------------------------------------------------------------------------
# Snapshot format
# ----------------------------------------------------------------------------

def dump_snapshot(items: List[CartItem]) -> str:
    return json.dumps({
        "version": CART_SNAPSHOT_VERSION,
        "items": [item.model_dump() for item in items],
    })


def load_snapshot(raw: str) -> List[CartItem]:
    """Parse a stored snapshot. Raises ValueError when it cannot be used."""
    data = json.loads(raw)
    if isinstance(data, list):
        # Unversioned snapshots were a bare list of items
        raw_items = data
    elif isinstance(data, dict):
        version = data.get("version")
        if version != CART_SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported cart snapshot version: {version!r}")
        raw_items = data.get("items")
        if not isinstance(raw_items, list):
            raise ValueError("Cart snapshot has no item list")
    else:
        raise ValueError("Cart snapshot must be an object or a list")
    return [CartItem.model_validate(item) for item in raw_items]


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

class Cart:
    """Client-held cart, restored from and persisted to blob storage.

    Quantities never drop below 1. ``set_quantity`` ignores values below 1;
    ``decrement`` removes the line when its quantity would reach 0. Callers
    wanting a line gone use ``remove_item`` or ``decrement``.
    """

    def __init__(
        self,
        storage: Optional[BlobStorage] = None,
        key: str = CART_STORAGE_KEY,
        listener: Optional[CartListener] = None,
    ):
        self.storage = storage if storage is not None else MemoryBlobStorage()
        self.key = key
        self.listener = listener
        self._items: List[CartItem] = []
        self._restore()

    # --- Queries --------------------------------------------------------------

    @property
    def items(self) -> List[CartItem]:
        return [item.model_copy(deep=True) for item in self._items]

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self._items)

    def is_empty(self) -> bool:
        return not self._items

    def get(self, product_id: int) -> Optional[CartItem]:
        line = self._find(product_id)
        return line.model_copy(deep=True) if line else None

    def total(self) -> float:
        return sum(item.price * item.quantity for item in self._items)

    # --- Mutations ------------------------------------------------------------

    def add_item(self, item: CartItem) -> CartEvent:
        existing = self._find(item.id)
        if existing is not None:
            existing.quantity += item.quantity
            event, subject = CartEvent.UPDATED, existing
        else:
            subject = item.model_copy(deep=True)
            self._items.append(subject)
            event = CartEvent.ADDED
        self._persist()
        self._notify(event, subject)
        return event

    def remove_item(self, product_id: int) -> bool:
        existing = self._find(product_id)
        if existing is None:
            return False
        self._items.remove(existing)
        self._persist()
        self._notify(CartEvent.REMOVED, existing)
        return True

    def set_quantity(self, product_id: int, quantity: int) -> bool:
        if quantity < 1:
            return False
        existing = self._find(product_id)
        if existing is None:
            return False
        existing.quantity = quantity
        self._persist()
        return True

    def increment(self, product_id: int) -> bool:
        existing = self._find(product_id)
        if existing is None:
            return False
        return self.set_quantity(product_id, existing.quantity + 1)

    def decrement(self, product_id: int) -> bool:
        existing = self._find(product_id)
        if existing is None:
            return False
        if existing.quantity <= 1:
            return self.remove_item(product_id)
        return self.set_quantity(product_id, existing.quantity - 1)

    def clear(self) -> None:
        self._items = []
        self._persist()
        self._notify(CartEvent.CLEARED, None)

    # --- Persistence ----------------------------------------------------------

    def snapshot(self) -> str:
        return dump_snapshot(self._items)

    def reload(self) -> None:
        """Replace the in-memory lines with whatever storage holds now."""
        self._items = []
        self._restore()

    def _restore(self) -> None:
        # Undecodable bytes surface as ValueError, runaway nesting as RecursionError
        try:
            raw = self.storage.get(self.key)
            restored = load_snapshot(raw) if raw else []
        except (OSError, ValueError, ValidationError, RecursionError) as exc:
            logger.warning("Discarding unreadable cart snapshot", key=self.key, error=str(exc))
            return
        for item in restored:
            existing = self._find(item.id)
            if existing is not None:
                existing.quantity += item.quantity
            else:
                self._items.append(item)

    def _persist(self) -> None:
        try:
            self.storage.set(self.key, self.snapshot())
        except OSError:
            logger.exception("Could not persist cart snapshot", key=self.key)

    # --- Internal helpers -----------------------------------------------------

    def _find(self, product_id: int) -> Optional[CartItem]:
        return next((item for item in self._items if item.id == product_id), None)

    def _notify(self, event: CartEvent, item: Optional[CartItem]) -> None:
        logger.debug("Cart changed", cart_event=event.value, product_id=item.id if item else None)
        if self.listener is not None:
            self.listener(event, item.model_copy(deep=True) if item else None)
