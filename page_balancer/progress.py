#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Thread-aware progress reporting built on top of tqdm."""

from __future__ import annotations

import math
import queue
import threading
from typing import Optional

from tqdm import tqdm


class ProgressController:
    """Aggregate progress from many worker threads into one tqdm bar.

    - Workers call :meth:`advance`; only the pump thread touches the bar.
    - The bar is expressed in percent with 0.01% granularity.
    - ``disable=True`` keeps the accounting but prints nothing.
    """

    def __init__(self, total_units: int, description: str = "", *, disable: bool = False) -> None:
        self.total_units = max(int(total_units), 1)
        self.description = description or "Progress"
        self.disable = disable
        self._scale = 100.0
        self._precision = 0.01
        self._queue: "queue.Queue[Optional[int]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._bar: Optional[tqdm] = None
        self._completed_units = 0
        self._last_percent = 0.0

    def __enter__(self) -> "ProgressController":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def completed_units(self) -> int:
        return self._completed_units

    def start(self) -> None:
        if self._thread is not None:
            return
        self._bar = tqdm(
            total=self._scale,
            desc=self.description,
            unit="%",
            dynamic_ncols=True,
            mininterval=0.2,
            leave=True,
            smoothing=0.0,
            disable=self.disable,
        )
        self._thread = threading.Thread(target=self._pump, name="progress-pump", daemon=True)
        self._thread.start()

    def advance(self, units: int = 1) -> None:
        if units <= 0:
            return
        self._queue.put(units)

    def close(self) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join()
        self._thread = None
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def _pump(self) -> None:
        while True:
            delta = self._queue.get()
            if delta is None:
                break
            self._completed_units += delta
            self._advance_to_percent(self._completed_units)

    def _advance_to_percent(self, completed_units: int) -> None:
        if self._bar is None:
            return
        percent = min(self._scale, (completed_units / self.total_units) * 100.0)
        percent = self._precision * math.floor(percent / self._precision)
        if percent <= self._last_percent:
            return
        self._bar.update(percent - self._last_percent)
        self._last_percent = percent
