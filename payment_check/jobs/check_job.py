"""Payment check job payload structure."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional


@dataclass(slots=True)
class PaymentCheckJob:
    run_id: str
    priority: str = "normal"
    # 1-based; bumped each time the worker re-enqueues a run after an unexpected error
    attempt: int = 1
    correlation_id: Optional[str] = None

    def key(self) -> str:
        return f"run:{self.run_id}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PaymentCheckJob":
        return cls(
            run_id=str(data["run_id"]),
            priority=str(data.get("priority", "normal")),
            attempt=int(data.get("attempt", 1)),
            correlation_id=data.get("correlation_id"),
        )


__all__ = ["PaymentCheckJob"]
