"""
Data models for cl-batch-open

Shared records for the batch open engine:
- ChannelCandidate: a peer considered for a funded channel
- Rejection: an immutable record of why a peer could not be funded
- OpenPlan / PlannedChannel: the concrete spending plan for one batch
- OpenResult / OpenHistory: per-peer outcomes and the audit record

All timestamps are Unix seconds. Records serialize to plain dicts via
to_dict()/from_dict() for SQLite JSON columns and RPC responses.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# Per-channel surcharge reserved on top of channel capacity (anchor reserve)
ANCHOR_RESERVE_SATS = 2500

DAY_SECONDS = 86400
HOUR_SECONDS = 3600


class RejectionReason(Enum):
    """Why a peer could not be funded."""
    MIN_CHANNEL_SIZE = "min_channel_size"
    NO_ANCHORS = "no_anchors"
    FAILED_TO_CONNECT = "failed_to_connect"
    NOT_ONLINE = "not_online"
    NO_ADDRESS = "no_address"
    REJECTED = "rejected"
    NO_ROUTING = "no_routing"
    CUSTOM_REQUIREMENTS = "custom_requirements"
    COOP_CLOSE = "coop_close"
    TOO_MANY_PENDING = "too_many_pending"
    BATCH_FAILED = "batch_failed"
    INTERNAL_ERROR = "internal_error"


class CandidateSource:
    """Discovery-origin tags attached to candidates."""
    FORCE_CLOSED = "force_closed"
    GRAPH_DISTANCE = "graph_distance"
    FORWARDING_HISTORY = "forwarding_history"
    MANUAL = "manual"


@dataclass(frozen=True)
class RejectionPolicy:
    """Retry policy for a rejection reason. cooldown_seconds=None means no wait."""
    retryable: bool
    cooldown_seconds: Optional[int] = None


REJECTION_POLICIES: Dict[RejectionReason, RejectionPolicy] = {
    RejectionReason.MIN_CHANNEL_SIZE: RejectionPolicy(True),  # retry with bumped amount
    RejectionReason.NO_ANCHORS: RejectionPolicy(False),
    RejectionReason.FAILED_TO_CONNECT: RejectionPolicy(True, DAY_SECONDS),
    RejectionReason.NOT_ONLINE: RejectionPolicy(True, 7 * DAY_SECONDS),
    RejectionReason.NO_ADDRESS: RejectionPolicy(False),
    RejectionReason.REJECTED: RejectionPolicy(False),
    RejectionReason.NO_ROUTING: RejectionPolicy(False),
    RejectionReason.CUSTOM_REQUIREMENTS: RejectionPolicy(False),
    RejectionReason.COOP_CLOSE: RejectionPolicy(False),
    RejectionReason.TOO_MANY_PENDING: RejectionPolicy(True, 6 * HOUR_SECONDS),
    RejectionReason.BATCH_FAILED: RejectionPolicy(True),
    RejectionReason.INTERNAL_ERROR: RejectionPolicy(True),
}


def _reason(value: Any) -> RejectionReason:
    if isinstance(value, RejectionReason):
        return value
    return RejectionReason(value)


@dataclass
class ChannelHistory:
    """A prior channel lifecycle with a peer."""
    channel_id: str
    opened_at: Optional[int] = None
    closed_at: Optional[int] = None
    close_type: Optional[str] = None  # 'local_force', 'remote_force', 'coop'
    local_balance: int = 0
    remote_balance: int = 0
    sats_routed: int = 0
    fees_earned: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "opened_at": self.opened_at,
            "closed_at": self.closed_at,
            "close_type": self.close_type,
            "local_balance": self.local_balance,
            "remote_balance": self.remote_balance,
            "sats_routed": self.sats_routed,
            "fees_earned": self.fees_earned,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChannelHistory':
        return cls(
            channel_id=str(data["channel_id"]),
            opened_at=data.get("opened_at"),
            closed_at=data.get("closed_at"),
            close_type=data.get("close_type"),
            local_balance=int(data.get("local_balance", 0) or 0),
            remote_balance=int(data.get("remote_balance", 0) or 0),
            sats_routed=int(data.get("sats_routed", 0) or 0),
            fees_earned=int(data.get("fees_earned", 0) or 0),
        )


@dataclass(frozen=True)
class Rejection:
    """Immutable rejection record."""
    date: int
    reason: RejectionReason
    details: Optional[str] = None
    min_channel_size: Optional[int] = None

    @property
    def policy(self) -> RejectionPolicy:
        return REJECTION_POLICIES[self.reason]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "reason": self.reason.value,
            "details": self.details,
            "min_channel_size": self.min_channel_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Rejection':
        min_size = data.get("min_channel_size")
        return cls(
            date=int(data["date"]),
            reason=_reason(data["reason"]),
            details=data.get("details"),
            min_channel_size=int(min_size) if min_size is not None else None,
        )


@dataclass
class ChannelCandidate:
    """
    A network peer considered for a funded channel.

    Attributes:
        pubkey: 66-character hex node id (stable key)
        alias: Display name only
        sources: Discovery tags, ordered and never empty
        added_at: First-seen timestamp, preserved across updates
        channels / capacity_sats / last_update: Graph metrics
        distance: Optional hop count from our node
        history: Prior channels with this peer (deduplicated by channel_id)
        rejections: Append-only rejection log
        min_channel_size: Learned floor (max over min_channel_size rejections)
    """
    pubkey: str
    alias: str = ""
    sources: List[str] = field(default_factory=list)
    added_at: int = field(default_factory=lambda: int(time.time()))
    channels: int = 0
    capacity_sats: int = 0
    last_update: int = 0
    distance: Optional[int] = None
    history: List[ChannelHistory] = field(default_factory=list)
    rejections: List[Rejection] = field(default_factory=list)
    min_channel_size: Optional[int] = None

    @property
    def is_manual(self) -> bool:
        return CandidateSource.MANUAL in self.sources

    @property
    def fees_earned(self) -> int:
        """Cumulative fees earned across all prior channels."""
        return sum(h.fees_earned for h in self.history)

    def learned_minimum(self) -> Optional[int]:
        """Highest minimum reported by min_channel_size rejections."""
        sizes = [
            r.min_channel_size for r in self.rejections
            if r.reason == RejectionReason.MIN_CHANNEL_SIZE and r.min_channel_size
        ]
        return max(sizes) if sizes else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pubkey": self.pubkey,
            "alias": self.alias,
            "sources": list(self.sources),
            "added_at": self.added_at,
            "channels": self.channels,
            "capacity_sats": self.capacity_sats,
            "last_update": self.last_update,
            "distance": self.distance,
            "history": [h.to_dict() for h in self.history],
            "rejections": [r.to_dict() for r in self.rejections],
            "min_channel_size": self.min_channel_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChannelCandidate':
        return cls(
            pubkey=data["pubkey"],
            alias=data.get("alias") or "",
            sources=list(data.get("sources") or []),
            added_at=int(data.get("added_at") or time.time()),
            channels=int(data.get("channels", 0) or 0),
            capacity_sats=int(data.get("capacity_sats", 0) or 0),
            last_update=int(data.get("last_update", 0) or 0),
            distance=data.get("distance"),
            history=[ChannelHistory.from_dict(h) for h in data.get("history") or []],
            rejections=[Rejection.from_dict(r) for r in data.get("rejections") or []],
            min_channel_size=data.get("min_channel_size"),
        )


@dataclass
class PlannedChannel:
    """One channel in a batch plan. amount is the funding amount (no reserve)."""
    pubkey: str
    alias: str
    amount: int
    is_minimum_enforced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pubkey": self.pubkey,
            "alias": self.alias,
            "amount": self.amount,
            "is_minimum_enforced": self.is_minimum_enforced,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlannedChannel':
        return cls(
            pubkey=data["pubkey"],
            alias=data.get("alias") or "",
            amount=int(data["amount"]),
            is_minimum_enforced=bool(data.get("is_minimum_enforced", False)),
        )


@dataclass
class OpenPlan:
    """
    A concrete spending plan for one batch.

    total_amount is the budget consumed including the anchor reserve of
    every planned channel, so total_amount + remaining_budget == budget.
    """
    budget: int
    default_size: int
    max_size: int
    channels: List[PlannedChannel] = field(default_factory=list)
    total_amount: int = 0
    remaining_budget: int = 0
    created_at: int = field(default_factory=lambda: int(time.time()))

    @property
    def funding_amount(self) -> int:
        """Sats that end up in channel outputs."""
        return sum(ch.amount for ch in self.channels)

    @property
    def reserve_amount(self) -> int:
        return len(self.channels) * ANCHOR_RESERVE_SATS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created_at": self.created_at,
            "budget": self.budget,
            "default_size": self.default_size,
            "max_size": self.max_size,
            "channels": [ch.to_dict() for ch in self.channels],
            "total_amount": self.total_amount,
            "funding_amount": self.funding_amount,
            "remaining_budget": self.remaining_budget,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OpenPlan':
        return cls(
            budget=int(data["budget"]),
            default_size=int(data["default_size"]),
            max_size=int(data["max_size"]),
            channels=[PlannedChannel.from_dict(c) for c in data.get("channels") or []],
            total_amount=int(data.get("total_amount", 0)),
            remaining_budget=int(data.get("remaining_budget", 0)),
            created_at=int(data.get("created_at") or time.time()),
        )


@dataclass
class OpenResult:
    """Terminal outcome for one attempted peer."""
    pubkey: str
    success: bool
    channel_id: Optional[str] = None
    error: Optional[str] = None
    rejection_reason: Optional[RejectionReason] = None
    detected_minimum: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pubkey": self.pubkey,
            "success": self.success,
            "channel_id": self.channel_id,
            "error": self.error,
            "rejection_reason": self.rejection_reason.value if self.rejection_reason else None,
            "detected_minimum": self.detected_minimum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OpenResult':
        reason = data.get("rejection_reason")
        return cls(
            pubkey=data["pubkey"],
            success=bool(data["success"]),
            channel_id=data.get("channel_id"),
            error=data.get("error"),
            rejection_reason=_reason(reason) if reason else None,
            detected_minimum=data.get("detected_minimum"),
        )


@dataclass
class OpenHistory:
    """Audit record, one per execution attempt."""
    date: int
    plan: OpenPlan
    results: List[OpenResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "plan": self.plan.to_dict(),
            "results": [r.to_dict() for r in self.results],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OpenHistory':
        return cls(
            date=int(data["date"]),
            plan=OpenPlan.from_dict(data["plan"]),
            results=[OpenResult.from_dict(r) for r in data.get("results") or []],
        )
