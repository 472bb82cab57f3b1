"""Cooperative cancellation shared by the import workers."""

from __future__ import annotations

import threading
import time
from typing import Callable, TypeVar

from cnximport.errors import ImportCancelled

T = TypeVar("T")

_POLL_INTERVAL_SECONDS = 0.05


class CancelToken:
    """Thread-safe cancellation flag with an optional monotonic deadline."""

    def __init__(
        self,
        *,
        deadline_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if deadline_seconds is not None and deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + deadline_seconds if deadline_seconds is not None else None
        self._reason: str | None = None

    def cancel(self, reason: str = "Import cancelled by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel("Import deadline exceeded")
            return True
        return False

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when there is none."""

        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def raise_if_cancelled(self, subject: str | None = None) -> None:
        if self.cancelled:
            raise ImportCancelled(self._reason or "Import cancelled", subject=subject)


def run_with_deadline(
    func: Callable[[], T],
    *,
    timeout: float | None,
    cancel: CancelToken | None = None,
    subject: str | None = None,
    poll_interval: float = _POLL_INTERVAL_SECONDS,
) -> T:
    """Run a blocking host call on a daemon thread and wait for it.

    Raises ``TimeoutError`` when ``timeout`` elapses first and
    ``ImportCancelled`` when the token fires. The abandoned call keeps running
    in the background; its result is discarded.
    """

    done = threading.Event()
    outcome: dict[str, object] = {}

    def _target() -> None:
        try:
            outcome["value"] = func()
        except BaseException as exc:  # re-raised on the waiting thread
            outcome["error"] = exc
        finally:
            done.set()

    worker = threading.Thread(target=_target, name=f"cnximport-call-{subject or 'host'}", daemon=True)
    worker.start()

    deadline = time.monotonic() + timeout if timeout is not None else None
    while not done.is_set():
        if cancel is not None:
            cancel.raise_if_cancelled(subject)
        wait_seconds = poll_interval
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"Host call exceeded {timeout:g}s")
            wait_seconds = min(wait_seconds, remaining)
        done.wait(wait_seconds)

    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome["value"]  # type: ignore[return-value]
