"""Secret redaction for logs and operator-facing output."""

from threading import Lock
from typing import Iterable, List, Optional

MASK = "********"


class SecretRegistry:
    """Process-wide set of strings that must never be printed."""

    def __init__(self):
        self._secrets: set[str] = set()
        self._lock = Lock()

    def register(self, *values: Optional[str]) -> None:
        with self._lock:
            for value in values:
                if value:
                    self._secrets.add(value)

    def clear(self) -> None:
        with self._lock:
            self._secrets.clear()

    def snapshot(self) -> List[str]:
        with self._lock:
            # Longest first so an encoded form is masked before its prefix
            return sorted(self._secrets, key=len, reverse=True)

    def redact(self, text: str) -> str:
        return redact(text, self.snapshot())


def redact(text: str, secrets: Iterable[str]) -> str:
    if not text:
        return text
    for secret in sorted((s for s in secrets if s), key=len, reverse=True):
        text = text.replace(secret, MASK)
    return text


secret_registry = SecretRegistry()
