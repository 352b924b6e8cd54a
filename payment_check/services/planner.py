"""Group resolved payments by gateway and slice each group into chunks.

Pure and deterministic: the same `success_map` always yields the same plan
(gateways in sorted order, payments in map iteration order), because the
plan is recomputed when a run resumes from its checkpoint log.
"""
from __future__ import annotations

from typing import Mapping

from payment_check.exceptions import ConfigurationError
from payment_check.services.types import Chunk, GatewayName, PaymentId


def plan_chunks(success_map: Mapping[PaymentId, GatewayName], chunk_size: int) -> dict[GatewayName, list[Chunk]]:
    if chunk_size < 1:
        raise ConfigurationError(f"chunk size must be >= 1 (got {chunk_size})")

    by_gateway: dict[GatewayName, list[PaymentId]] = {}
    for payment_id, gateway in success_map.items():
        by_gateway.setdefault(gateway, []).append(payment_id)

    return {
        gateway: [
            tuple(by_gateway[gateway][start:start + chunk_size])
            for start in range(0, len(by_gateway[gateway]), chunk_size)
        ]
        for gateway in sorted(by_gateway)
    }


def chunk_count(plan: Mapping[GatewayName, list[Chunk]]) -> int:
    return sum(len(chunks) for chunks in plan.values())


__all__ = ["plan_chunks", "chunk_count"]
