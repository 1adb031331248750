"""
Allocation Planner module for cl-batch-open

Turns a candidate list and a fixed budget into a concrete spending plan.

Algorithm (greedy, signal-ranked, maximizes channel count):
1. Keep eligible candidates only (no open channel, no blocking rejection)
2. Drop candidates whose effective minimum exceeds max_size
3. Rank by signal quality: manual > fees earned > number of sources >
   capacity * channels > newest first
4. Walk the ranking, charging effective minimum + anchor reserve per channel;
   skip candidates that do not fit, stop once not even a default-size
   channel fits anymore

Budget accounting: total_amount is the budget consumed *including* the
anchor reserve of each planned channel, so total_amount + remaining_budget
always equals budget. Mutations (add/remove/resize) keep that invariant.
"""

import time
from typing import Iterable, List, Optional, Tuple

from .eligibility import is_eligible
from .models import (
    ANCHOR_RESERVE_SATS,
    ChannelCandidate,
    OpenPlan,
    PlannedChannel,
)


class PlanError(Exception):
    """Base class for local plan mutation errors."""


class CandidateNotFound(PlanError):
    def __init__(self, pubkey: str):
        self.pubkey = pubkey
        super().__init__(f"Candidate {pubkey} not found")


class InvalidIndex(PlanError):
    def __init__(self, index: int, size: int):
        self.index = index
        super().__init__(f"Invalid index {index} (plan has {size} channels)")


class InsufficientBudget(PlanError):
    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(f"Not enough budget. Need {needed}, have {available}")


def effective_minimum(candidate: ChannelCandidate, default_size: int) -> int:
    """Smallest channel we would open to this candidate."""
    return max(candidate.min_channel_size or 0, default_size)


def _signal_key(candidate: ChannelCandidate) -> Tuple:
    # Ascending sort on negated signals == descending signal quality.
    # pubkey is the last tie-break so the order is total.
    return (
        0 if candidate.is_manual else 1,
        -candidate.fees_earned,
        -len(set(candidate.sources)),
        -(candidate.capacity_sats * candidate.channels),
        -candidate.added_at,
        candidate.pubkey,
    )


def sort_candidates_by_signal(candidates: Iterable[ChannelCandidate]) -> List[ChannelCandidate]:
    """Return candidates ordered best signal first."""
    return sorted(candidates, key=_signal_key)


def create_plan(budget: int, default_size: int, max_size: int,
                candidates: Iterable[ChannelCandidate],
                open_peer_ids: Optional[Iterable[str]] = None,
                now: Optional[int] = None) -> OpenPlan:
    """
    Create a batch open plan.

    Args:
        budget: Total sats available, reserves included
        default_size: Default channel size in sats
        max_size: Largest channel we accept to open
        candidates: Candidate set (the caller decides whether to re-read storage)
        open_peer_ids: Peers we already have an active or pending channel with
        now: Clock override for cooldown checks

    Returns:
        OpenPlan with total_amount + remaining_budget == budget
    """
    if now is None:
        now = int(time.time())
    open_set = set(open_peer_ids) if open_peer_ids is not None else None

    eligible = [c for c in candidates if is_eligible(c, open_set, now)]
    fundable = [c for c in eligible if effective_minimum(c, default_size) <= max_size]

    planned: List[PlannedChannel] = []
    remaining = budget
    floor = default_size + ANCHOR_RESERVE_SATS

    for candidate in sort_candidates_by_signal(fundable):
        amount = effective_minimum(candidate, default_size)
        required = amount + ANCHOR_RESERVE_SATS

        # A later, smaller candidate may still fit
        if required > remaining:
            continue

        planned.append(PlannedChannel(
            pubkey=candidate.pubkey,
            alias=candidate.alias,
            amount=amount,
            is_minimum_enforced=amount > default_size,
        ))
        remaining -= required

        if remaining < floor:
            break

    return OpenPlan(
        budget=budget,
        default_size=default_size,
        max_size=max_size,
        channels=planned,
        total_amount=budget - remaining,
        remaining_budget=remaining,
        created_at=now,
    )


def add_to_plan(plan: OpenPlan, candidates: Iterable[ChannelCandidate],
                pubkey: str, amount: Optional[int] = None) -> OpenPlan:
    """Append a candidate to the plan, at its effective minimum unless amount is given."""
    candidate = next((c for c in candidates if c.pubkey == pubkey), None)
    if candidate is None:
        raise CandidateNotFound(pubkey)

    if amount is None:
        amount = effective_minimum(candidate, plan.default_size)

    required = amount + ANCHOR_RESERVE_SATS
    if required > plan.remaining_budget:
        raise InsufficientBudget(required, plan.remaining_budget)

    plan.channels.append(PlannedChannel(
        pubkey=candidate.pubkey,
        alias=candidate.alias,
        amount=amount,
        is_minimum_enforced=amount > plan.default_size,
    ))
    plan.total_amount += required
    plan.remaining_budget -= required
    return plan


def _check_index(plan: OpenPlan, index: int) -> None:
    if index < 0 or index >= len(plan.channels):
        raise InvalidIndex(index, len(plan.channels))


def remove_from_plan(plan: OpenPlan, index: int) -> OpenPlan:
    """Remove the channel at index (0-based) and refund its amount and reserve."""
    _check_index(plan, index)

    removed = plan.channels.pop(index)
    refund = removed.amount + ANCHOR_RESERVE_SATS
    plan.total_amount -= refund
    plan.remaining_budget += refund
    return plan


def resize_in_plan(plan: OpenPlan, index: int, new_amount: int) -> OpenPlan:
    """Change the funding amount of the channel at index (0-based)."""
    _check_index(plan, index)

    channel = plan.channels[index]
    diff = new_amount - channel.amount
    if diff > plan.remaining_budget:
        raise InsufficientBudget(diff, plan.remaining_budget)

    channel.amount = new_amount
    channel.is_minimum_enforced = new_amount > plan.default_size
    plan.total_amount += diff
    plan.remaining_budget -= diff
    return plan


def format_sats(sats: int) -> str:
    """Short human readable amount: 1.50 BTC, 2.00M, 250k, 900."""
    if sats >= 100_000_000:
        return f"{sats / 100_000_000:.2f} BTC"
    if sats >= 1_000_000:
        return f"{sats / 1_000_000:.2f}M"
    if sats >= 1_000:
        return f"{round(sats / 1_000)}k"
    return str(sats)


def format_plan(plan: OpenPlan) -> str:
    """Render the plan as a fixed-width table."""
    rule = "-" * 80
    lines = [
        f"Budget: {format_sats(plan.budget)} | Default: {format_sats(plan.default_size)} "
        f"| Max: {format_sats(plan.max_size)}",
        f"Each channel reserves an extra {format_sats(ANCHOR_RESERVE_SATS)} for anchors.",
        rule,
        "  #  Pubkey           Amount      Notes             Alias",
        rule,
    ]
    for i, ch in enumerate(plan.channels, start=1):
        notes = "min enforced" if ch.is_minimum_enforced else ""
        lines.append(
            f"{i:>3}  {ch.pubkey[:12]}...  {format_sats(ch.amount):>10}  "
            f"{notes:<16}  {ch.alias[:25]}"
        )
    lines.append(rule)
    lines.append(
        f"Total: {len(plan.channels)} channels, {format_sats(plan.total_amount)} "
        f"| Remaining: {format_sats(plan.remaining_budget)}"
    )
    return "\n".join(lines)
