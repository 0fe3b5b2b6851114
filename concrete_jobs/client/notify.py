import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Toast:
    level: str  # success|info|error
    title: str
    message: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ToastQueue:
    def __init__(self, max_size: int = 50):
        self._lock = threading.Lock()
        self._toasts: Deque[Toast] = deque(maxlen=max_size)
        self._listeners: List[Callable[[Toast], None]] = []
        self._disposed = False

    def push(self, level: str, title: str, message: str = "") -> Toast:
        toast = Toast(level, title, message)
        with self._lock:
            if self._disposed:
                return toast
            self._toasts.append(toast)
            listeners = list(self._listeners)
        log = logger.warning if level == "error" else logger.info
        log("%s: %s", title, message)
        for listener in listeners:
            listener(toast)
        return toast

    def success(self, title: str, message: str = "") -> Toast:
        return self.push("success", title, message)

    def info(self, title: str, message: str = "") -> Toast:
        return self.push("info", title, message)

    def error(self, title: str, message: str = "") -> Toast:
        return self.push("error", title, message)

    def subscribe(self, listener: Callable[[Toast], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def drain(self) -> List[Toast]:
        with self._lock:
            toasts = list(self._toasts)
            self._toasts.clear()
        return toasts

    def dispose(self) -> None:
        with self._lock:
            self._disposed = True
            self._toasts.clear()
            self._listeners.clear()
