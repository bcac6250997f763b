"""Min-cost assignment (Hungarian / Kuhn-Munkres)"""
from .hungarian import hungarian_min_cost, PADDING_COST

__all__ = ["hungarian_min_cost", "PADDING_COST"]
