from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Callable

from PIL import Image


class PanelImageCache:
    """Crop images keyed by panel id.

    Owned and passed around by the caller; nothing in the engine keeps one
    globally. Eviction is explicit (`evict`, `evict_page`, `clear`), plus
    least-recently-used eviction when `max_entries` is set.
    """

    def __init__(self, max_entries: int | None = None):
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1 or None")
        self.max_entries = max_entries
        self._items: OrderedDict[str, Image.Image] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, panel_id: object) -> bool:
        with self._lock:
            return panel_id in self._items

    def get(self, panel_id: str) -> Image.Image | None:
        with self._lock:
            img = self._items.get(panel_id)
            if img is not None:
                self._items.move_to_end(panel_id)
            return img

    def put(self, panel_id: str, image: Image.Image) -> None:
        with self._lock:
            self._items[panel_id] = image
            self._items.move_to_end(panel_id)
            if self.max_entries is not None:
                while len(self._items) > self.max_entries:
                    self._items.popitem(last=False)

    def get_or_create(self, panel_id: str, factory: Callable[[], Image.Image]) -> Image.Image:
        img = self.get(panel_id)
        if img is None:
            img = factory()
            self.put(panel_id, img)
        return img

    def evict(self, panel_id: str) -> bool:
        with self._lock:
            return self._items.pop(panel_id, None) is not None

    def evict_page(self, page_index: int) -> int:
        prefix = f"page-{page_index}-panel-"
        with self._lock:
            keys = [k for k in self._items if k.startswith(prefix)]
            for k in keys:
                del self._items[k]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
