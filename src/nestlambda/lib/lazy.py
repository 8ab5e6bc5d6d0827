"""Lazily constructed, process-wide resources.

Clients that are expensive to create (boto3 clients, the Docker client) are
built once per process and reused. Instead of module-level globals they live
behind a ``Lazy`` holder that is passed around explicitly.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class Lazy(Generic[T]):
    """Holder that runs its factory at most once.

    Example:
        >>> calls = []
        >>> holder = Lazy(lambda: calls.append(1) or "client")
        >>> holder.get_or_init()
        'client'
        >>> holder.get_or_init()
        'client'
        >>> len(calls)
        1
    """

    def __init__(self, factory: Callable[[], T]) -> None:
        """Create a holder for the value produced by ``factory``."""
        self._factory = factory
        self._lock = threading.Lock()
        self._value: T | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        """Whether the factory has already produced the value."""
        return self._initialized

    def get_or_init(self) -> T:
        """Return the value, building it on first access.

        If the factory raises, the holder stays uninitialized and the next
        call tries again.
        """
        if self._initialized:
            return self._value  # type: ignore[return-value]
        with self._lock:
            if not self._initialized:
                self._value = self._factory()
                self._initialized = True
        return self._value  # type: ignore[return-value]
