"""
Eligibility module for cl-batch-open

Decides whether a candidate may be funded right now, based on whether we
already have a channel with it and on its rejection history (retry policy
and cooldown per rejection reason).

Pure functions, no side effects; safe to call from worker threads.
"""

import time
from typing import Iterable, Optional

from .models import ChannelCandidate, Rejection


def cooldown_remaining(rejection: Rejection, now: Optional[int] = None) -> Optional[int]:
    """
    Seconds until a rejection stops blocking its candidate.

    Returns:
        None for non-retryable reasons (blocks forever), otherwise the
        remaining cooldown in seconds (0 once expired or without cooldown).
    """
    policy = rejection.policy
    if not policy.retryable:
        return None
    if not policy.cooldown_seconds:
        return 0
    if now is None:
        now = int(time.time())
    age = now - rejection.date
    return max(0, policy.cooldown_seconds - age)


def blocking_rejection(candidate: ChannelCandidate,
                       now: Optional[int] = None) -> Optional[Rejection]:
    """Return the first rejection that currently blocks the candidate, if any."""
    if now is None:
        now = int(time.time())
    for rejection in candidate.rejections:
        remaining = cooldown_remaining(rejection, now)
        if remaining is None or remaining > 0:
            return rejection
    return None


def is_eligible(candidate: ChannelCandidate,
                open_peer_ids: Optional[Iterable[str]] = None,
                now: Optional[int] = None) -> bool:
    """
    Check if a candidate may be funded.

    A candidate with an active or pending channel is never eligible, whatever
    its rejection history. Otherwise every rejection must be retryable and
    past its cooldown window.
    """
    if open_peer_ids is not None and candidate.pubkey in open_peer_ids:
        return False

    if not candidate.rejections:
        return True

    return blocking_rejection(candidate, now) is None
