"""Best-bid ordering, chosen once per auction from ``auction_config.type``."""

from dataclasses import dataclass
from typing import Callable, Dict


@dataclass(frozen=True)
class BidOrdering:
    name: str
    # True when *candidate* strictly beats *incumbent*
    beats: Callable[[float, float], bool]
    # "below" / "above": how a valid bid relates to the current price
    direction: str
    best_first_descending: bool

    def improves(self, amount: float, current: float) -> bool:
        return self.beats(amount, current)

    def requirement(self, current: float) -> str:
        return f"Bid must be {self.direction} {current:g}"

    def sort_key(self, amount: float) -> float:
        """Key that sorts the best bid first with an ascending sort."""
        return -amount if self.best_first_descending else amount


# Lowest offer wins: the client posts a job and providers undercut each other
REVERSE = BidOrdering(
    name="reverse",
    beats=lambda candidate, incumbent: candidate < incumbent,
    direction="below",
    best_first_descending=False,
)

STANDARD = BidOrdering(
    name="standard",
    beats=lambda candidate, incumbent: candidate > incumbent,
    direction="above",
    best_first_descending=True,
)

_ORDERINGS: Dict[str, BidOrdering] = {o.name: o for o in (REVERSE, STANDARD)}


def ordering_for(auction_type: str) -> BidOrdering:
    try:
        return _ORDERINGS[auction_type]
    except KeyError:
        raise ValueError(f"Unknown auction type: {auction_type}") from None
