"""FIFO queue of concepts waiting for their own generation loop."""

from collections import deque
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class QueuedConcept:
    prompt: str
    reference_images: tuple[str, ...] = ()
    label: Optional[str] = None  # e.g. "Variation 2"


@dataclass
class ConceptQueue:
    """Strict FIFO. Items leave only through ``dequeue`` or an explicit ``remove``."""

    _items: deque = field(default_factory=deque)

    def enqueue(self, prompt: str, reference_images=None, label: Optional[str] = None) -> QueuedConcept:
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("Queued prompt must be a non-empty string.")
        item = QueuedConcept(prompt.strip(), tuple(reference_images or ()), label)
        self._items.append(item)
        return item

    def dequeue(self) -> Optional[QueuedConcept]:
        return self._items.popleft() if self._items else None

    def remove(self, index: int) -> QueuedConcept:
        if not 0 <= index < len(self._items):
            raise IndexError(f"No queued concept at position {index}.")
        item = self._items[index]
        del self._items[index]
        return item

    def snapshot(self) -> list[QueuedConcept]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)
