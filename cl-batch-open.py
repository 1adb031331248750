#!/usr/bin/env python3
"""
cl-batch-open: A Batch Channel Open Plugin for Core Lightning

Opens many channels in a single funding transaction. Candidates (peers worth
a channel) live in a local SQLite store together with every rejection a peer
ever gave us. Given a budget the plugin:

1. Plans: ranks eligible candidates by signal quality and packs as many
   channels as the budget allows (anchor reserve included per channel)
2. Verifies: connects to every planned peer, a few at a time
3. Converges: a peer that fails is recorded as rejected and the plan is
   rebuilt so the next best candidate takes its budget
4. Funds: starts all channels, builds one PSBT, signs and broadcasts it

Dependencies:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import os
import signal
import time
from dataclasses import asdict
from typing import Any, Dict, Optional

from pyln.client import Plugin, RpcError

from batchopen.config import Config, CONFIG_FIELD_TYPES, IMMUTABLE_CONFIG_KEYS
from batchopen.database import Database
from batchopen.eligibility import blocking_rejection, cooldown_remaining, is_eligible
from batchopen.metrics import PrometheusExporter
from batchopen.models import (
    CandidateSource,
    ChannelCandidate,
    OpenPlan,
    Rejection,
    RejectionReason,
)
from batchopen.node_client import NodeClient
from batchopen.opener import BatchOpener, FatalBatchError, OpenOptions, format_results
from batchopen.planner import (
    PlanError,
    add_to_plan,
    create_plan,
    format_plan,
    remove_from_plan,
    resize_in_plan,
    sort_candidates_by_signal,
)


plugin = Plugin()

# Global instances (initialized in init)
database: Optional[Database] = None
config: Optional[Config] = None
node: Optional[NodeClient] = None
opener: Optional[BatchOpener] = None
metrics_exporter: Optional[PrometheusExporter] = None

# Plan being adjusted interactively (batchopen-plan / -plan-add / ...)
current_plan: Optional[OpenPlan] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='batchopen-db-path',
    default='~/.lightning/batch_open.db',
    description='Path to the SQLite database for candidates and history'
)

plugin.add_option(
    name='batchopen-default-channel-size',
    default='1000000',
    description='Default channel size in sats (default: 1,000,000)'
)

plugin.add_option(
    name='batchopen-max-channel-size',
    default='10000000',
    description='Largest channel the planner will open to satisfy a peer minimum (default: 10,000,000)'
)

plugin.add_option(
    name='batchopen-feerate',
    default='2',
    description='Funding transaction fee rate in sat/vB (default: 2)'
)

plugin.add_option(
    name='batchopen-connect-timeout',
    default='15',
    description='Timeout in seconds for each connect attempt (default: 15)'
)

plugin.add_option(
    name='batchopen-connect-batch-size',
    default='3',
    description='Peers probed concurrently during verification (default: 3)'
)

plugin.add_option(
    name='batchopen-max-iterations',
    default='5',
    description='Max re-plan iterations before giving up on a batch (default: 5)'
)

plugin.add_option(
    name='batchopen-announce',
    default='true',
    description='Announce opened channels to the network (default: true)'
)

plugin.add_option(
    name='batchopen-dry-run',
    default='false',
    description='If true, plan and simulate opens but never touch the node (default: false)'
)

plugin.add_option(
    name='batchopen-enable-prometheus',
    default='false',
    description='If true, start Prometheus metrics exporter HTTP server (default: false)'
)

plugin.add_option(
    name='batchopen-prometheus-port',
    default='9810',
    description='Port for Prometheus HTTP metrics server (default: 9810)'
)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('true', '1', 'yes', 'on')


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the batch open plugin.

    1. Parse options into Config
    2. Initialize the database and apply persisted overrides
    3. Start Prometheus exporter (if enabled)
    4. Wire up the node client and batch opener
    """
    global database, config, node, opener, metrics_exporter

    plugin.log("Initializing cl-batch-open plugin...")

    config = Config(
        db_path=os.path.expanduser(options['batchopen-db-path']),
        default_channel_size=int(options['batchopen-default-channel-size']),
        max_channel_size=int(options['batchopen-max-channel-size']),
        fee_rate_sat_vb=int(options['batchopen-feerate']),
        connect_timeout_seconds=int(options['batchopen-connect-timeout']),
        connect_batch_size=int(options['batchopen-connect-batch-size']),
        max_iterations=int(options['batchopen-max-iterations']),
        announce_channels=_as_bool(options['batchopen-announce']),
        dry_run=_as_bool(options['batchopen-dry-run']),
        enable_prometheus=_as_bool(options['batchopen-enable-prometheus']),
        prometheus_port=int(options['batchopen-prometheus-port']),
    )

    database = Database(config.db_path, plugin)
    database.initialize()

    skipped = config.load_overrides(database)
    if config._version > 0:
        plugin.log(f"Loaded config overrides from database (version {config._version})")
    for key in skipped:
        plugin.log(f"Ignoring unreadable config override for {key}", level='warn')

    plugin.log(f"Configuration loaded: default_size={config.default_channel_size}, "
               f"max_size={config.max_channel_size}, feerate={config.fee_rate_sat_vb} sat/vB, "
               f"dry_run={config.dry_run}")

    if config.enable_prometheus:
        metrics_exporter = PrometheusExporter(port=config.prometheus_port, plugin=plugin)
        if not metrics_exporter.start_server():
            plugin.log("Prometheus metrics disabled due to server startup failure", level='warn')
            metrics_exporter = None
    else:
        metrics_exporter = None

    node = NodeClient(plugin.rpc, plugin, announce=config.announce_channels)
    opener = BatchOpener(plugin, config, database, node, metrics_exporter)

    def handle_shutdown_signal(signum, frame):
        plugin.log("Received SIGTERM, shutting down...", level='info')
        if metrics_exporter:
            metrics_exporter.stop_server()
        if database:
            database.close()

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    plugin.log("cl-batch-open plugin initialized successfully!")
    return None


# =============================================================================
# RPC METHODS - Exposed to lightning-cli
# =============================================================================

def _candidate_view(candidate: ChannelCandidate, open_peer_ids, now: int) -> Dict[str, Any]:
    view = candidate.to_dict()
    view["eligible"] = is_eligible(candidate, open_peer_ids, now)
    view["fees_earned"] = candidate.fees_earned
    blocking = blocking_rejection(candidate, now)
    if blocking is not None:
        remaining = cooldown_remaining(blocking, now)
        view["blocked_by"] = {
            "reason": blocking.reason.value,
            "retry_in_seconds": remaining,  # None = permanent
        }
    return view


@plugin.method("batchopen-status")
def batchopen_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current status of the batch open plugin.

    Usage: lightning-cli batchopen-status
    """
    if database is None:
        return {"error": "Plugin not fully initialized"}

    now = int(time.time())
    open_peer_ids = node.get_open_peer_ids()
    candidates = database.load_candidates()
    eligible = [c for c in candidates if is_eligible(c, open_peer_ids, now)]
    last = database.get_open_history(limit=1)

    return {
        "status": "running",
        "config": {
            "default_channel_size": config.default_channel_size,
            "max_channel_size": config.max_channel_size,
            "fee_rate_sat_vb": config.fee_rate_sat_vb,
            "dry_run": config.dry_run,
        },
        "onchain": node.get_chain_balance(),
        "candidates": len(candidates),
        "eligible_candidates": len(eligible),
        "current_plan": current_plan.to_dict() if current_plan else None,
        "last_batch": last[0].to_dict() if last else None,
    }


@plugin.method("batchopen-candidates")
def batchopen_candidates(plugin: Plugin, eligible_only: bool = False,
                         sort: str = "signal") -> Dict[str, Any]:
    """
    List channel candidates.

    Usage:
      lightning-cli batchopen-candidates [eligible_only] [sort]

    sort: signal (default), added, capacity
    """
    if database is None:
        return {"error": "Plugin not initialized"}

    now = int(time.time())
    open_peer_ids = node.get_open_peer_ids()
    candidates = database.load_candidates()

    if _as_bool(eligible_only):
        candidates = [c for c in candidates if is_eligible(c, open_peer_ids, now)]

    if sort == "signal":
        candidates = sort_candidates_by_signal(candidates)
    elif sort == "added":
        candidates = sorted(candidates, key=lambda c: c.added_at, reverse=True)
    elif sort == "capacity":
        candidates = sorted(candidates, key=lambda c: c.capacity_sats, reverse=True)
    else:
        return {"error": f"Unknown sort: {sort}. Use 'signal', 'added' or 'capacity'"}

    return {
        "candidates": [_candidate_view(c, open_peer_ids, now) for c in candidates],
        "count": len(candidates),
    }


@plugin.method("batchopen-add")
def batchopen_add(plugin: Plugin, pubkey: str) -> Dict[str, Any]:
    """
    Add a peer as a manual candidate (manual candidates rank first).

    Usage: lightning-cli batchopen-add <pubkey>
    """
    if database is None:
        return {"error": "Plugin not initialized"}

    pubkey = pubkey.lower()
    try:
        info = node.get_node_info(pubkey)
    except RpcError as e:
        return {"status": "error", "error": f"Node lookup failed: {e}"}

    candidate = database.upsert_candidate(ChannelCandidate(
        pubkey=pubkey,
        alias=info.alias if info else "",
        sources=[CandidateSource.MANUAL],
    ))
    plugin.log(f"Added manual candidate {pubkey[:12]}...")
    return {"status": "success", "candidate": candidate.to_dict(), "in_graph": info is not None}


@plugin.method("batchopen-reject")
def batchopen_reject(plugin: Plugin, pubkey: str, reason: str,
                     min_size: Optional[int] = None, note: Optional[str] = None) -> Dict[str, Any]:
    """
    Record a rejection for a candidate by hand.

    Usage: lightning-cli batchopen-reject <pubkey> <reason> [min_size] [note]

    reason is one of the rejection reasons, e.g. min_channel_size, rejected,
    no_anchors, custom_requirements.
    """
    if database is None:
        return {"error": "Plugin not initialized"}

    try:
        rejection_reason = RejectionReason(reason)
    except ValueError:
        valid = ", ".join(r.value for r in RejectionReason)
        return {"error": f"Unknown reason '{reason}'. Use one of: {valid}"}

    if rejection_reason == RejectionReason.MIN_CHANNEL_SIZE and min_size is None:
        return {"error": "min_channel_size rejections need min_size"}

    rejection = Rejection(
        date=int(time.time()),
        reason=rejection_reason,
        details=note or "manual",
        min_channel_size=int(min_size) if min_size is not None else None,
    )
    if not database.add_rejection(pubkey.lower(), rejection):
        return {"error": f"Candidate {pubkey} not found"}

    return {"status": "success", "pubkey": pubkey.lower(), "rejection": rejection.to_dict()}


@plugin.method("batchopen-remove")
def batchopen_remove(plugin: Plugin, pubkey: str) -> Dict[str, Any]:
    """
    Remove a candidate.

    Usage: lightning-cli batchopen-remove <pubkey>
    """
    if database is None:
        return {"error": "Plugin not initialized"}

    if database.remove_candidate(pubkey.lower()):
        return {"status": "success", "pubkey": pubkey.lower()}
    return {"status": "noop", "message": f"Candidate {pubkey} not found"}


def _build_plan(budget, default_size, max_size) -> OpenPlan:
    cfg = config.snapshot()
    return create_plan(
        int(budget),
        int(default_size) if default_size is not None else cfg.default_channel_size,
        int(max_size) if max_size is not None else cfg.max_channel_size,
        database.load_candidates(),
        node.get_open_peer_ids(),
    )


def _plan_response(plan: OpenPlan) -> Dict[str, Any]:
    return {"plan": plan.to_dict(), "table": format_plan(plan).split("\n")}


@plugin.method("batchopen-plan")
def batchopen_plan(plugin: Plugin, budget: Optional[int] = None,
                   default_size: Optional[int] = None,
                   max_size: Optional[int] = None) -> Dict[str, Any]:
    """
    Create a batch open plan for a budget (sats, anchor reserves included).

    Without a budget the current plan is shown. The plan can be adjusted with
    batchopen-plan-add / -plan-remove / -plan-resize before batchopen-open.

    Usage: lightning-cli batchopen-plan [budget] [default_size] [max_size]
    """
    global current_plan

    if database is None:
        return {"error": "Plugin not initialized"}

    if budget is None:
        if current_plan is None:
            return {"error": "No plan. Usage: batchopen-plan <budget> [default_size] [max_size]"}
        return _plan_response(current_plan)

    try:
        current_plan = _build_plan(budget, default_size, max_size)
    except RpcError as e:
        return {"status": "error", "error": f"Could not read open channels: {e}"}

    return _plan_response(current_plan)


@plugin.method("batchopen-plan-add")
def batchopen_plan_add(plugin: Plugin, pubkey: str, amount: Optional[int] = None) -> Dict[str, Any]:
    """
    Add a candidate to the current plan.

    Usage: lightning-cli batchopen-plan-add <pubkey> [amount]
    """
    if current_plan is None:
        return {"error": "No plan. Run batchopen-plan <budget> first"}

    try:
        add_to_plan(current_plan, database.load_candidates(), pubkey.lower(),
                    int(amount) if amount is not None else None)
    except PlanError as e:
        return {"status": "error", "error": str(e)}
    return _plan_response(current_plan)


@plugin.method("batchopen-plan-remove")
def batchopen_plan_remove(plugin: Plugin, index: int, reason: Optional[str] = None) -> Dict[str, Any]:
    """
    Remove a channel from the current plan by its 1-based row number.

    With a reason the peer also gets a rejection recorded, so the planner
    leaves it out next time.

    Usage: lightning-cli batchopen-plan-remove <index> [reason]
    """
    if current_plan is None:
        return {"error": "No plan. Run batchopen-plan <budget> first"}

    position = int(index) - 1
    try:
        channel = current_plan.channels[position] if 0 <= position < len(current_plan.channels) else None
        remove_from_plan(current_plan, position)
    except PlanError as e:
        return {"status": "error", "error": str(e)}

    if reason:
        try:
            rejection_reason = RejectionReason(reason)
            details = "manual"
        except ValueError:
            rejection_reason = RejectionReason.REJECTED
            details = reason
        database.add_rejection(channel.pubkey, Rejection(
            date=int(time.time()),
            reason=rejection_reason,
            details=details,
        ))

    response = _plan_response(current_plan)
    response["removed"] = channel.to_dict()
    return response


@plugin.method("batchopen-plan-resize")
def batchopen_plan_resize(plugin: Plugin, index: int, amount: int) -> Dict[str, Any]:
    """
    Change the funding amount of a planned channel (1-based row number).

    Usage: lightning-cli batchopen-plan-resize <index> <amount>
    """
    if current_plan is None:
        return {"error": "No plan. Run batchopen-plan <budget> first"}

    try:
        resize_in_plan(current_plan, int(index) - 1, int(amount))
    except PlanError as e:
        return {"status": "error", "error": str(e)}
    return _plan_response(current_plan)


@plugin.method("batchopen-open")
def batchopen_open(plugin: Plugin, budget: Optional[int] = None,
                   default_size: Optional[int] = None, max_size: Optional[int] = None,
                   feerate: Optional[int] = None, dry_run: bool = False,
                   fallback: bool = False) -> Dict[str, Any]:
    """
    Execute a batch open.

    With a budget a fresh plan is created and opened; without one the
    current (possibly adjusted) plan is used. With fallback=true a batch that
    fails before broadcast is retried as one transaction per channel.

    Usage: lightning-cli batchopen-open [budget] [default_size] [max_size] [feerate] [dry_run] [fallback]
    """
    global current_plan

    if opener is None:
        return {"error": "Plugin not initialized"}

    try:
        if budget is not None:
            plan = _build_plan(budget, default_size, max_size)
        elif current_plan is not None:
            plan = current_plan
        else:
            return {"error": "No plan. Pass a budget or run batchopen-plan first"}
        open_peer_ids = node.get_open_peer_ids()
    except RpcError as e:
        return {"status": "error", "error": f"Could not read open channels: {e}"}

    if not plan.channels:
        return {"status": "noop", "message": "Plan has no channels", "plan": plan.to_dict()}

    simulate = _as_bool(dry_run)
    options = OpenOptions(
        fee_rate=int(feerate) if feerate is not None else None,
        dry_run=simulate,
        open_peer_ids=open_peer_ids,
    )

    try:
        if _as_bool(fallback):
            results = opener.execute_plan_with_fallback(plan, options)
        else:
            results = opener.execute_plan(plan, options)
    except FatalBatchError as e:
        if not simulate:
            current_plan = None
        return {
            "status": "error",
            "stage": e.stage,
            "error": str(e),
            "results": [r.to_dict() for r in e.results],
            "report": format_results(e.results).split("\n"),
        }

    if not simulate:
        current_plan = None

    succeeded = sum(1 for r in results if r.success)
    return {
        "status": "success" if succeeded else "failed",
        "dry_run": simulate or config.dry_run,
        "opened": succeeded,
        "failed": len(results) - succeeded,
        "results": [r.to_dict() for r in results],
        "report": format_results(results).split("\n"),
    }


@plugin.method("batchopen-history")
def batchopen_history(plugin: Plugin, days: int = 30) -> Dict[str, Any]:
    """
    Show past batch opens.

    Usage: lightning-cli batchopen-history [days]
    """
    if database is None:
        return {"error": "Plugin not initialized"}

    since = int(time.time()) - int(days) * 86400
    history = database.get_open_history(since=since)
    return {
        "history": [h.to_dict() for h in history],
        "count": len(history),
        "days": int(days),
    }


@plugin.method("batchopen-config")
def batchopen_config(plugin: Plugin, action: str, key: str = None, value: str = None) -> Dict[str, Any]:
    """
    Get or set runtime configuration.

    Usage:
      lightning-cli batchopen-config get                   # Get all config
      lightning-cli batchopen-config get <key>             # Get specific key
      lightning-cli batchopen-config set <key> <value>     # Set key
      lightning-cli batchopen-config reset <key>           # Reset to default
      lightning-cli batchopen-config list-mutable          # List changeable keys
    """
    if config is None or database is None:
        return {"error": "Plugin not initialized"}

    if action == "get":
        if key:
            if not hasattr(config, key) or key.startswith('_'):
                return {"error": f"Unknown config key: {key}"}
            return {"key": key, "value": getattr(config, key), "version": config._version}
        return {"config": asdict(config.snapshot()), "version": config._version}

    elif action == "set":
        if not key or value is None:
            return {"error": "Usage: batchopen-config set <key> <value>"}

        result = config.update_runtime(database, key, str(value))
        if result.get("status") == "success":
            plugin.log(
                f"CONFIG UPDATE: {key} changed from {result['old_value']} "
                f"to {result['new_value']} (v{result['version']})"
            )
            if key == 'announce_channels' and node:
                node.announce = result['new_value']
        return result

    elif action == "reset":
        if not key:
            return {"error": "Usage: batchopen-config reset <key>"}
        if database.delete_config_override(key):
            return {
                "status": "success",
                "message": f"Override for '{key}' removed. Restart plugin to apply default."
            }
        return {"error": f"No override found for '{key}'"}

    elif action == "list-mutable":
        mutable = [k for k in CONFIG_FIELD_TYPES.keys() if k not in IMMUTABLE_CONFIG_KEYS]
        return {"mutable_keys": sorted(mutable), "count": len(mutable)}

    return {"error": f"Unknown action: {action}. Use 'get', 'set', 'reset', or 'list-mutable'"}


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
