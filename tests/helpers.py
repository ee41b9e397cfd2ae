"""Test doubles shared across test modules."""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from shared.models import DeliveryOutcome


class FakeGateway:
    """Records every delivery; channels listed in `failing` are rejected."""

    def __init__(self, failing: Optional[set] = None, raising: Optional[set] = None):
        self.failing = set(failing or ())
        self.raising = set(raising or ())
        self.calls: List[Tuple[str, str]] = []

    async def deliver(self, channel: str, text: str) -> DeliveryOutcome:
        self.calls.append((channel, text))
        if channel in self.raising:
            raise RuntimeError(f"boom for {channel}")
        if channel in self.failing:
            return DeliveryOutcome.failed("channel_not_found")
        return DeliveryOutcome.ok()

    async def list_channels(self) -> List[Dict[str, str]]:
        return [{"id": "C1", "name": "general"}]
