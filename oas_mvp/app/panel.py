"""Copilot panel state.

One PanelState per UI session, owned by a PanelStore that the app creates and
injects into handlers. Transitions are total; there is nothing to fail.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

DEFAULT_MAX_SESSIONS = 10_000


@dataclass
class PanelState:
    is_open: bool = False
    referrer_path: str | None = None

    def open(self) -> None:
        self.is_open = True

    def close(self) -> None:
        self.is_open = False

    def toggle(self) -> None:
        self.is_open = not self.is_open

    def set_referrer(self, path: str) -> None:
        self.referrer_path = path

    def clear_referrer(self) -> None:
        self.referrer_path = None

    def snapshot(self) -> dict[str, Any]:
        return {"isOpen": self.is_open, "referrerPath": self.referrer_path}


class PanelStore:
    """Map of UI session key -> PanelState.

    Only `get` creates entries; reads go through `peek`. The map is capped at
    `max_size` and drops the least recently written session first.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SESSIONS) -> None:
        self.max_size = max(1, int(max_size))
        self._states: OrderedDict[str, PanelState] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> PanelState:
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = PanelState()
                self._states[key] = state
                while len(self._states) > self.max_size:
                    self._states.popitem(last=False)
            else:
                self._states.move_to_end(key)
            return state

    def peek(self, key: str) -> PanelState:
        # Unknown keys get a throwaway default that is never stored.
        with self._lock:
            state = self._states.get(key)
            return state if state is not None else PanelState()

    def discard(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
