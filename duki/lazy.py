from __future__ import annotations

import threading
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class OnceCell(Generic[T]):
    """Process-scoped value built on first access and never rebuilt.

    The builder must be a pure function of immutable inputs. The double-checked
    latch keeps concurrent first callers from running it twice; later reads take
    no lock at all.
    """

    def __init__(self, builder: Callable[[], T], name: str = "") -> None:
        self._builder = builder
        self._name = name or getattr(builder, "__name__", "value")
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._ready = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_ready(self) -> bool:
        return self._ready

    def get(self) -> T:
        if not self._ready:
            with self._lock:
                if not self._ready:
                    self._value = self._builder()
                    self._ready = True
        return self._value  # type: ignore[return-value]
