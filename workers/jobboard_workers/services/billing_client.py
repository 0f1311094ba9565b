from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


@dataclass(slots=True)
class ReplayResult:
    claimed: int
    reconciled: int
    rescheduled: int
    dead_lettered: int

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ReplayResult:
        return cls(
            claimed=int(payload.get("claimed", 0)),
            reconciled=int(payload.get("reconciled", 0)),
            rescheduled=int(payload.get("rescheduled", 0)),
            dead_lettered=int(payload.get("dead_lettered", 0)),
        )


class BillingReplayClient:
    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def replay_deferred_events(self, limit: int = 50) -> ReplayResult:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/billing/deferred-events/replay",
                params={"limit": limit},
                headers=self.headers,
            )
            response.raise_for_status()
            return ReplayResult.from_payload(response.json())
