from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class AnalysisCancelled(RuntimeError):
    """Raised inside a long loop once its :class:`CancelToken` is set."""


class CancelToken:
    """Cooperative cancellation flag shared between a caller and a worker.

    The worker calls :meth:`raise_if_cancelled` at a fixed cadence; the
    caller (any thread) calls :meth:`cancel`.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AnalysisCancelled("analysis cancelled by caller")


class ProgressTicker:
    """Report progress every ``step`` units and once at the end.

    Exceptions raised by the callback are logged and swallowed so a broken
    progress consumer never aborts a parse.
    """

    def __init__(
        self,
        total: int,
        step: int,
        callback: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.total = total
        self.step = max(1, step)
        self.callback = callback
        self.cancel = cancel
        self.done = 0

    def tick(self) -> None:
        self.done += 1
        if self.done % self.step == 0 or self.done == self.total:
            if self.cancel is not None:
                self.cancel.raise_if_cancelled()
            self._emit()

    def finish(self) -> None:
        """Emit the final report if the loop stopped before ``total``."""
        if self.done < self.total:
            self.done = self.total
            self._emit()

    def _emit(self) -> None:
        if self.callback is None:
            return
        try:
            self.callback(self.done, self.total)
        except Exception:
            log.warning("progress callback failed", exc_info=True)


def read_text_file(path: str | Path) -> str:
    """Read a ledger/invoice file: UTF-8 first, Latin-1 as fallback.

    EFD files are generated by the government validator in ISO-8859-1, but
    many ERPs export UTF-8.
    """
    raw = Path(path).read_bytes()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        log.debug("%s is not UTF-8, decoding as latin-1", path)
        text = raw.decode("latin-1")
    return text.lstrip("\ufeff")
