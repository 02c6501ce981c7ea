from __future__ import annotations
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import OperationInProgressError


class OperationLock:
    """
    Prozessweiter Ein-Slot-Sperrzustand: leer oder der Name der laufenden Operation.
    Kein Warten, keine Warteschlange: wer die Sperre besetzt vorfindet, wird abgewiesen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._current: Optional[str] = None

    @property
    def current(self) -> Optional[str]:
        return self._current

    def busy(self) -> bool:
        return self._current is not None

    def acquire(self, name: str) -> bool:
        with self._guard:
            if self._current is not None:
                return False
            self._current = name
            return True

    def release(self) -> None:
        with self._guard:
            self._current = None

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        with self._guard:
            if self._current is not None:
                raise OperationInProgressError(self._current)
            self._current = name
        try:
            yield
        finally:
            self.release()
