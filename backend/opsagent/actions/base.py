"""Shared base for action handlers that persist through the store and report changes."""

import inspect
from collections.abc import Callable
from typing import Any, Optional

from ..domain import ChangeEvent
from ..store import AgentStore

ChangeCallback = Callable[[ChangeEvent], Any]


class StoreBackedHandler:
    """Common plumbing for handlers that write through ``AgentStore``."""

    def __init__(self, store: AgentStore, *, on_change: Optional[ChangeCallback] = None) -> None:
        self.store = store
        self.on_change = on_change

    async def report_change(self, change: ChangeEvent) -> None:
        if self.on_change is None:
            return
        outcome = self.on_change(change)
        if inspect.isawaitable(outcome):
            await outcome
