"""
Notifier port: best-effort side channel for payment lifecycle events.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, event: str, payload: dict[str, Any]) -> None: ...
