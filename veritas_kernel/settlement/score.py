"""Settlement score: the fixed-point form of a belief's consensus."""

from typing import Optional

from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.models.config import ProtocolConfig


def to_fixed_point(probability: float, scale: int) -> int:
    return max(0, min(scale, int(round(probability * scale))))


class SettlementScorer:
    """Reads the latest aggregate for publication to a settlement layer."""

    def __init__(self, store: ProtocolStore, config: Optional[ProtocolConfig] = None):
        self.store = store
        self.config = config or ProtocolConfig()

    def settlement_score(self, belief_id: str, scale: Optional[int] = None) -> dict:
        belief = self.store.require_belief(belief_id)
        scale = scale or self.config.settlement_scale
        return {
            "belief_id": belief_id,
            "aggregate": belief.previous_aggregate,
            "scale": scale,
            "fixed_point": to_fixed_point(belief.previous_aggregate, scale),
        }
