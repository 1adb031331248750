"""
Tests for the allocation planner.

Tests:
- Budget accounting (reserves included in total_amount)
- Greedy walk: skip candidates that don't fit, stop below the default floor
- Signal ranking
- Plan adjustment (add / remove / resize) and its errors
"""

import pytest

from batchopen.models import (
    ANCHOR_RESERVE_SATS,
    CandidateSource,
    ChannelHistory,
    Rejection,
    RejectionReason,
)
from batchopen.planner import (
    CandidateNotFound,
    InsufficientBudget,
    InvalidIndex,
    add_to_plan,
    create_plan,
    effective_minimum,
    format_plan,
    format_sats,
    remove_from_plan,
    resize_in_plan,
    sort_candidates_by_signal,
)


NOW = 1_700_000_000
DEFAULT = 1_000_000
MAX = 10_000_000


def _pk(i):
    return "02" + f"{i:064x}"


def _min_size(size):
    return Rejection(date=NOW - 60, reason=RejectionReason.MIN_CHANNEL_SIZE, min_channel_size=size)


class TestCreatePlan:
    """create_plan() greedy allocation."""

    def test_totals_add_up_to_budget(self, make_candidate):
        candidates = [make_candidate(_pk(i), added_at=NOW - i) for i in range(5)]
        plan = create_plan(3_500_000, DEFAULT, MAX, candidates, set(), NOW)

        assert len(plan.channels) == 3
        assert plan.total_amount + plan.remaining_budget == plan.budget
        assert plan.total_amount == 3 * (DEFAULT + ANCHOR_RESERVE_SATS)
        assert plan.funding_amount == 3 * DEFAULT
        assert plan.reserve_amount == 3 * ANCHOR_RESERVE_SATS

    def test_reserve_is_charged_per_channel(self, make_candidate):
        """Exactly 2x default does not fit two channels once reserves are charged."""
        candidates = [make_candidate(_pk(i)) for i in range(3)]
        plan = create_plan(2 * DEFAULT, DEFAULT, MAX, candidates, set(), NOW)
        assert len(plan.channels) == 1

    def test_skips_candidate_that_does_not_fit(self, make_candidate):
        """A big minimum is skipped, not a reason to stop scanning."""
        big = make_candidate(_pk(1), sources=[CandidateSource.MANUAL],
                             rejections=[_min_size(5_000_000)], min_channel_size=5_000_000)
        small = make_candidate(_pk(2))
        plan = create_plan(3_000_000, DEFAULT, MAX, [big, small], set(), NOW)

        assert [ch.pubkey for ch in plan.channels] == [small.pubkey]

    def test_stops_below_default_floor(self, make_candidate):
        candidates = [make_candidate(_pk(i), added_at=NOW - i) for i in range(5)]
        budget = 2 * (DEFAULT + ANCHOR_RESERVE_SATS)
        plan = create_plan(budget, DEFAULT, MAX, candidates, set(), NOW)

        assert len(plan.channels) == 2
        assert plan.remaining_budget == 0

    def test_excludes_minimum_above_max_size(self, make_candidate):
        whale = make_candidate(_pk(1), rejections=[_min_size(20_000_000)], min_channel_size=20_000_000)
        plan = create_plan(50_000_000, DEFAULT, MAX, [whale], set(), NOW)
        assert plan.channels == []
        assert plan.remaining_budget == 50_000_000

    def test_excludes_open_peers_and_blocked(self, make_candidate):
        open_peer = make_candidate(_pk(1))
        blocked = make_candidate(_pk(2), rejections=[
            Rejection(date=NOW - 60, reason=RejectionReason.NO_ANCHORS)
        ])
        fine = make_candidate(_pk(3))
        plan = create_plan(10_000_000, DEFAULT, MAX, [open_peer, blocked, fine], {open_peer.pubkey}, NOW)
        assert [ch.pubkey for ch in plan.channels] == [fine.pubkey]

    def test_minimum_enforced_amounts(self, make_candidate):
        bumped = make_candidate(_pk(1), sources=[CandidateSource.MANUAL],
                                rejections=[_min_size(2_500_000)], min_channel_size=2_500_000)
        plain = make_candidate(_pk(2))
        plan = create_plan(10_000_000, DEFAULT, MAX, [bumped, plain], set(), NOW)

        by_pubkey = {ch.pubkey: ch for ch in plan.channels}
        assert by_pubkey[bumped.pubkey].amount == 2_500_000
        assert by_pubkey[bumped.pubkey].is_minimum_enforced is True
        assert by_pubkey[plain.pubkey].amount == DEFAULT
        assert by_pubkey[plain.pubkey].is_minimum_enforced is False

    def test_no_amount_below_effective_minimum(self, make_candidate):
        candidates = [
            make_candidate(_pk(i), rejections=[_min_size(size)], min_channel_size=size)
            for i, size in enumerate([500_000, 1_500_000, 3_000_000, 7_000_000])
        ]
        plan = create_plan(30_000_000, DEFAULT, MAX, candidates, set(), NOW)
        lookup = {c.pubkey: c for c in candidates}
        for ch in plan.channels:
            assert ch.amount >= effective_minimum(lookup[ch.pubkey], DEFAULT)

    def test_channel_count_grows_with_budget(self, make_candidate):
        """Holding uniform-minimum candidates fixed, more budget never means fewer channels."""
        candidates = [make_candidate(_pk(i), added_at=NOW - i) for i in range(8)]
        counts = [
            len(create_plan(budget, DEFAULT, MAX, candidates, set(), NOW).channels)
            for budget in range(0, 12_000_000, 250_000)
        ]
        assert counts == sorted(counts)
        assert counts[-1] == 8

    def test_empty_candidates(self):
        plan = create_plan(5_000_000, DEFAULT, MAX, [], set(), NOW)
        assert plan.channels == []
        assert plan.total_amount == 0
        assert plan.remaining_budget == 5_000_000


class TestSignalOrder:
    """sort_candidates_by_signal()"""

    def test_manual_beats_everything(self, make_candidate):
        rich = make_candidate(_pk(1), sources=["force_closed", "forwarding_history", "graph_distance"],
                              history=[ChannelHistory(channel_id="1x1x1", fees_earned=100_000)],
                              capacity_sats=10**10, channels=1000)
        manual = make_candidate(_pk(2), sources=[CandidateSource.MANUAL], channels=0, capacity_sats=0)
        assert sort_candidates_by_signal([rich, manual])[0] is manual

    def test_fees_earned_before_sources(self, make_candidate):
        earner = make_candidate(_pk(1), history=[ChannelHistory(channel_id="1x1x1", fees_earned=50)])
        multi = make_candidate(_pk(2), sources=["force_closed", "graph_distance"])
        assert sort_candidates_by_signal([multi, earner])[0] is earner

    def test_two_sources_before_one(self, make_candidate):
        one = make_candidate(_pk(1), sources=["graph_distance"], capacity_sats=10**10)
        two = make_candidate(_pk(2), sources=["graph_distance", "forwarding_history"])
        assert sort_candidates_by_signal([one, two])[0] is two

    def test_centrality_then_recency(self, make_candidate):
        central = make_candidate(_pk(1), capacity_sats=100_000_000, channels=50, added_at=NOW - 100)
        fringe = make_candidate(_pk(2), capacity_sats=1_000_000, channels=2, added_at=NOW)
        newer = make_candidate(_pk(3), capacity_sats=1_000_000, channels=2, added_at=NOW + 1)
        assert sort_candidates_by_signal([fringe, newer, central]) == [central, newer, fringe]

    def test_order_is_total(self, make_candidate):
        twins = [make_candidate(_pk(i), added_at=NOW) for i in (3, 1, 2)]
        ordered = sort_candidates_by_signal(twins)
        assert [c.pubkey for c in ordered] == sorted(c.pubkey for c in twins)


class TestPlanAdjustment:
    """add_to_plan / remove_from_plan / resize_in_plan"""

    def _plan(self, make_candidate, budget=5_000_000):
        candidates = [make_candidate(_pk(i), added_at=NOW - i) for i in range(6)]
        return create_plan(budget, DEFAULT, MAX, candidates[:2], set(), NOW), candidates

    def test_remove_then_add_restores_totals(self, make_candidate):
        plan, candidates = self._plan(make_candidate)
        before = (plan.total_amount, plan.remaining_budget)
        removed = plan.channels[0]

        remove_from_plan(plan, 0)
        assert plan.remaining_budget == before[1] + removed.amount + ANCHOR_RESERVE_SATS

        add_to_plan(plan, candidates, removed.pubkey, removed.amount)
        assert (plan.total_amount, plan.remaining_budget) == before

    def test_add_defaults_to_effective_minimum(self, make_candidate):
        plan, candidates = self._plan(make_candidate)
        picky = make_candidate(_pk(99), rejections=[_min_size(1_200_000)], min_channel_size=1_200_000)
        add_to_plan(plan, candidates + [picky], picky.pubkey)

        assert plan.channels[-1].amount == 1_200_000
        assert plan.channels[-1].is_minimum_enforced is True
        assert plan.total_amount + plan.remaining_budget == plan.budget

    def test_add_unknown_candidate(self, make_candidate):
        plan, candidates = self._plan(make_candidate)
        with pytest.raises(CandidateNotFound):
            add_to_plan(plan, candidates, _pk(12345))

    def test_add_over_budget(self, make_candidate):
        plan, candidates = self._plan(make_candidate)
        with pytest.raises(InsufficientBudget):
            add_to_plan(plan, candidates, candidates[3].pubkey, plan.remaining_budget)

    def test_remove_invalid_index(self, make_candidate):
        plan, _ = self._plan(make_candidate)
        with pytest.raises(InvalidIndex):
            remove_from_plan(plan, len(plan.channels))
        with pytest.raises(InvalidIndex):
            remove_from_plan(plan, -1)

    def test_resize(self, make_candidate):
        plan, _ = self._plan(make_candidate)
        resize_in_plan(plan, 0, 2_000_000)
        assert plan.channels[0].amount == 2_000_000
        assert plan.channels[0].is_minimum_enforced is True
        assert plan.total_amount + plan.remaining_budget == plan.budget

        resize_in_plan(plan, 0, DEFAULT)
        assert plan.channels[0].is_minimum_enforced is False

    def test_resize_over_budget(self, make_candidate):
        plan, _ = self._plan(make_candidate)
        with pytest.raises(InsufficientBudget):
            resize_in_plan(plan, 0, plan.channels[0].amount + plan.remaining_budget + 1)

    def test_resize_invalid_index(self, make_candidate):
        plan, _ = self._plan(make_candidate)
        with pytest.raises(InvalidIndex):
            resize_in_plan(plan, 7, DEFAULT)


class TestFormatting:

    @pytest.mark.parametrize("sats,expected", [
        (150_000_000, "1.50 BTC"),
        (2_000_000, "2.00M"),
        (250_000, "250k"),
        (900, "900"),
    ])
    def test_format_sats(self, sats, expected):
        assert format_sats(sats) == expected

    def test_format_plan_lists_channels(self, make_candidate):
        candidates = [make_candidate(_pk(i), alias=f"peer{i}") for i in range(2)]
        plan = create_plan(5_000_000, DEFAULT, MAX, candidates, set(), NOW)
        table = format_plan(plan)
        assert "peer0" in table and "peer1" in table
        assert "Total: 2 channels" in table
