"""
Deterministic experiment bucketing: sha256(user_id ":" experiment_id) mod N.
No I/O and no stored bucket tables; the same inputs give the same variant in any
process. Each experiment id hashes independently, so experiments do not exclude
each other.
"""
from __future__ import annotations

import hashlib

from paywall_engine.paywall.models import ExperimentAssignment


class ExperimentAssigner:
    """Stateless; safe to share between threads."""

    def variant(self, user_id: str, experiment_id: str, variant_count: int) -> int:
        if variant_count < 1:
            raise ValueError("variant_count must be >= 1")
        digest = hashlib.sha256(f"{user_id}:{experiment_id}".encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big") % variant_count

    def assign(self, user_id: str, experiment_id: str, variant_count: int) -> ExperimentAssignment:
        return ExperimentAssignment(
            user_id=user_id,
            experiment_id=experiment_id,
            variant=self.variant(user_id, experiment_id, variant_count),
        )
