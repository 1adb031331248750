"""
cl-batch-open package

Core modules for the batch channel open plugin:
- models: Candidates, rejections, plans, results and their retry policies
- eligibility: Cooldown / retry checks for candidates
- planner: Greedy signal-ranked budget allocation and plan adjustment
- error_classifier: Remote error -> rejection reason (+ detected minimum)
- opener: Convergence loop and funding protocol
- node_client: Core Lightning RPC calls used by the opener
- database: SQLite candidate and history store
- config: Configuration and runtime overrides
- metrics: Prometheus exporter
"""

from .config import Config, ConfigSnapshot
from .database import Database
from .error_classifier import ParsedOpenError, parse_open_error
from .models import (
    ANCHOR_RESERVE_SATS,
    CandidateSource,
    ChannelCandidate,
    ChannelHistory,
    OpenHistory,
    OpenPlan,
    OpenResult,
    PlannedChannel,
    Rejection,
    RejectionReason,
)
from .node_client import NodeClient
from .opener import BatchOpener, FatalBatchError, OpenOptions
from .planner import (
    CandidateNotFound,
    InsufficientBudget,
    InvalidIndex,
    PlanError,
    create_plan,
)

__all__ = [
    'ANCHOR_RESERVE_SATS',
    'BatchOpener',
    'CandidateNotFound',
    'CandidateSource',
    'ChannelCandidate',
    'ChannelHistory',
    'Config',
    'ConfigSnapshot',
    'Database',
    'FatalBatchError',
    'InsufficientBudget',
    'InvalidIndex',
    'NodeClient',
    'OpenHistory',
    'OpenOptions',
    'OpenPlan',
    'OpenResult',
    'ParsedOpenError',
    'PlanError',
    'PlannedChannel',
    'Rejection',
    'RejectionReason',
    'create_plan',
    'parse_open_error',
]
