"""
Batch Opener module for cl-batch-open

Drives a plan to funded channels against the node:

    VERIFY -> INITIATE -> FUND -> SIGN -> BROADCAST

VERIFY and INITIATE run inside a convergence loop. A peer that fails either
step gets a rejection written to the candidate store, the plan is rebuilt
from a fresh read of the store (so the failed peer drops out and the freed
budget goes to the next best candidate), and the loop starts over. The loop
is bounded by max_iterations.

Once INITIATE succeeds the funding protocol runs exactly once. Any failure
there cancels the pending stubs (best-effort) and fails the whole batch.

Every terminal path except a dry run writes exactly one OpenHistory record.
Results hold one entry per peer: a peer re-planned after a retryable
rejection keeps only its latest outcome.

execute_plan_with_fallback opens the channels one transaction each when the
batch fails before broadcast.
"""

import concurrent.futures
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from pyln.client import RpcError

from .error_classifier import is_node_wide_error, parse_open_error
from .metrics import MetricNames
from .models import OpenHistory, OpenPlan, OpenResult, Rejection, RejectionReason
from .node_client import ChannelStartError, FundedTransaction, PendingChannel
from .planner import create_plan


CONNECT_BATCH_SIZE = 3
CONNECT_TIMEOUT_SECONDS = 15
MAX_ITERATIONS = 5

# Stages that fail before anything reaches the network
FALLBACK_STAGES = frozenset({"initiate", "fund", "sign"})


class FatalBatchError(Exception):
    """
    A batch-level failure that cannot be pinned on one peer.

    Raised after cleanup and after the history record is written. results
    holds every OpenResult accumulated up to the failure; plan is the plan
    in effect when it happened.
    """
    def __init__(self, message: str, stage: str, results: List[OpenResult],
                 plan: Optional[OpenPlan] = None):
        super().__init__(message)
        self.stage = stage
        self.results = results
        self.plan = plan


@dataclass
class OpenOptions:
    """
    Per-call options for execute_plan.

    fee_rate is sat/vB (config default when None). open_peer_ids is used when
    re-planning; when None the node is asked.
    """
    fee_rate: Optional[int] = None
    dry_run: bool = False
    open_peer_ids: Optional[Iterable[str]] = None
    on_progress: Optional[Callable[[str], None]] = None


@dataclass
class OpenAttempt:
    pubkey: str
    alias: str
    amount: int
    pending: Optional[PendingChannel] = None


@dataclass
class ProbeResult:
    attempt: OpenAttempt
    success: bool
    reason: Optional[RejectionReason] = None
    error: Optional[str] = None


class BatchOpener:
    """
    Executes open plans with per-peer failure recovery.

    Args:
        plugin: pyln Plugin (logging)
        config: Config; a snapshot is taken per execute_plan call
        database: Candidate and history store
        node: NodeClient
        metrics: Optional PrometheusExporter
    """

    def __init__(self, plugin, config, database, node, metrics=None):
        self.plugin = plugin
        self.config = config
        self.database = database
        self.node = node
        self.metrics = metrics

    def _progress(self, options: OpenOptions, message: str, level: str = 'info'):
        self.plugin.log(message, level=level)
        if options.on_progress:
            options.on_progress(message)

    # =========================================================================
    # Entry point
    # =========================================================================

    def execute_plan(self, plan: OpenPlan, options: Optional[OpenOptions] = None) -> List[OpenResult]:
        """
        Open the channels of a plan as one funding transaction.

        Returns:
            One OpenResult per peer that reached a terminal state

        Raises:
            FatalBatchError: non-attributable INITIATE failure or any failure
                in FUND/SIGN/BROADCAST
        """
        options = options or OpenOptions()
        cfg = self.config.snapshot()
        fee_rate = options.fee_rate or cfg.fee_rate_sat_vb
        results: List[OpenResult] = []

        if options.dry_run or cfg.dry_run:
            self._progress(options, f"DRY RUN - simulating batch open of {len(plan.channels)} channels")
            return [
                OpenResult(pubkey=ch.pubkey, success=True, channel_id=f"dry-run:{ch.pubkey[:8]}")
                for ch in plan.channels
            ]

        attempts: List[OpenAttempt] = []
        pending: Optional[List[PendingChannel]] = None

        max_iterations = getattr(cfg, "max_iterations", MAX_ITERATIONS)
        for iteration in range(1, max_iterations + 1):
            attempts = self._materialize(plan)
            if not attempts:
                break

            self._inc(MetricNames.CONVERGENCE_ITERATIONS_TOTAL)
            self._progress(
                options,
                f"Iteration {iteration}/{max_iterations}: verifying connectivity of "
                f"{len(attempts)} peers"
            )

            # VERIFY
            failures = [p for p in self._verify(attempts, cfg, options) if not p.success]
            if failures:
                for probe in failures:
                    self._reject(probe.attempt, probe.reason, probe.error, results)
                    self._progress(options, f"Skipping {probe.attempt.alias or probe.attempt.pubkey[:12]}: {probe.error}")
                plan = self._replan(plan, options)
                continue

            # INITIATE
            self._progress(options, f"Initiating {len(attempts)} channel opens")
            try:
                pending = self.node.open_channels_batch([(a.pubkey, a.amount) for a in attempts])
            except RpcError as e:
                parsed = parse_open_error(e)
                blamed = e.pubkey if isinstance(e, ChannelStartError) else parsed.pubkey
                implicated = next((a for a in attempts if a.pubkey == blamed), None)
                if implicated is None:
                    self._progress(options, f"Batch open failed: {parsed.details}", level='error')
                    self._save_history(plan, results)
                    self._inc(MetricNames.FATAL_BATCHES_TOTAL, {"stage": "initiate"})
                    raise FatalBatchError(f"Batch open failed: {parsed.details}", "initiate",
                                          results, plan=plan) from e

                self._reject(implicated, parsed.reason, parsed.details, results,
                             min_size=parsed.min_size)
                self._progress(
                    options,
                    f"{implicated.alias or implicated.pubkey[:12]} refused the open "
                    f"({parsed.reason.value}), re-planning",
                    level='warn'
                )
                plan = self._replan(plan, options)
                continue
            break
        else:
            self._progress(
                options,
                f"Gave up after {max_iterations} iterations without a clean batch",
                level='warn'
            )

        if pending is None:
            if not attempts:
                self._progress(options, "No viable peers left to open in this batch")
            self._save_history(plan, results)
            return results

        by_pubkey = {p.pubkey: p for p in pending}
        for attempt in attempts:
            attempt.pending = by_pubkey.get(attempt.pubkey)

        self._run_funding(plan, attempts, pending, fee_rate, results, options)
        return results

    def execute_plan_with_fallback(self, plan: OpenPlan,
                                   options: Optional[OpenOptions] = None) -> List[OpenResult]:
        """
        execute_plan, falling back to one transaction per channel.

        The fallback runs when the batch fails before anything could have
        reached the network (INITIATE, FUND or SIGN). The channels of the plan
        in effect at the failure are opened one by one with fundchannel; a
        peer that refuses gets a rejection recorded, a node-wide failure
        stops the remaining opens. The fallback writes its own history record.

        Raises:
            FatalBatchError: BROADCAST failures are re-raised unchanged
        """
        options = options or OpenOptions()
        try:
            return self.execute_plan(plan, options)
        except FatalBatchError as e:
            if e.stage not in FALLBACK_STAGES:
                raise
            plan = e.plan or plan
            results = list(e.results)
            self._progress(options, f"{e}; falling back to sequential opens", level='warn')

        fee_rate = options.fee_rate or self.config.snapshot().fee_rate_sat_vb
        for attempt in self._materialize(plan):
            name = attempt.alias or attempt.pubkey[:12]
            try:
                channel_id = self.node.open_channel(attempt.pubkey, attempt.amount, fee_rate)
            except RpcError as err:
                parsed = parse_open_error(err)
                if is_node_wide_error(err):
                    self._add_result(results, OpenResult(
                        pubkey=attempt.pubkey,
                        success=False,
                        error=parsed.details,
                        rejection_reason=RejectionReason.INTERNAL_ERROR,
                    ))
                    self._progress(options, f"{name}: {parsed.details}, stopping sequential opens",
                                   level='error')
                    break
                self._reject(attempt, parsed.reason, parsed.details, results, min_size=parsed.min_size)
                self._progress(options, f"{name}: {parsed.reason.value}", level='warn')
                continue

            self._add_result(results, OpenResult(
                pubkey=attempt.pubkey,
                success=True,
                channel_id=channel_id or attempt.pubkey,
            ))
            self._progress(options, f"{name}: channel opened")

        self._save_history(plan, results)
        return results

    # =========================================================================
    # Convergence loop helpers
    # =========================================================================

    def _materialize(self, plan: OpenPlan) -> List[OpenAttempt]:
        return [OpenAttempt(pubkey=ch.pubkey, alias=ch.alias, amount=ch.amount) for ch in plan.channels]

    def _replan(self, plan: OpenPlan, options: OpenOptions) -> OpenPlan:
        """Rebuild the plan from a fresh read of the candidate store."""
        if options.open_peer_ids is not None:
            open_peer_ids = set(options.open_peer_ids)
        else:
            open_peer_ids = self.node.get_open_peer_ids()

        new_plan = create_plan(
            plan.budget,
            plan.default_size,
            plan.max_size,
            self.database.load_candidates(),
            open_peer_ids,
        )
        self.plugin.log(
            f"Re-planned: {len(new_plan.channels)} channels, "
            f"{new_plan.remaining_budget} sats unallocated",
            level='debug'
        )
        return new_plan

    def _reject(self, attempt: OpenAttempt, reason: RejectionReason, error: str,
                results: List[OpenResult], min_size: Optional[int] = None):
        self.database.add_rejection(attempt.pubkey, Rejection(
            date=int(time.time()),
            reason=reason,
            details=error,
            min_channel_size=min_size,
        ))
        self._inc(MetricNames.REJECTIONS_RECORDED_TOTAL, {"reason": reason.value})
        self._add_result(results, OpenResult(
            pubkey=attempt.pubkey,
            success=False,
            error=error,
            rejection_reason=reason,
            detected_minimum=min_size,
        ))

    def _verify(self, attempts: Sequence[OpenAttempt], cfg, options: OpenOptions) -> List[ProbeResult]:
        """
        Probe connectivity in concurrent batches; batches run one after another.

        The connected set is read once for the whole pass.
        """
        connected = self.node.get_connected_peer_ids()
        batch_size = max(1, getattr(cfg, "connect_batch_size", CONNECT_BATCH_SIZE))
        timeout = getattr(cfg, "connect_timeout_seconds", CONNECT_TIMEOUT_SECONDS)
        probes: List[ProbeResult] = []

        with concurrent.futures.ThreadPoolExecutor(
                max_workers=batch_size, thread_name_prefix="batchopen-probe") as executor:
            for i in range(0, len(attempts), batch_size):
                batch = attempts[i:i + batch_size]
                probes.extend(executor.map(
                    lambda a: self._probe(a, connected, timeout, options),
                    batch
                ))
        return probes

    def _probe(self, attempt: OpenAttempt, connected, timeout: int, options: OpenOptions) -> ProbeResult:
        name = attempt.alias or attempt.pubkey[:12]
        if attempt.pubkey in connected:
            self.plugin.log(f"{name}: already connected", level='debug')
            return ProbeResult(attempt, True)

        try:
            info = self.node.get_node_info(attempt.pubkey)
        except RpcError as e:
            # Our own node failed, the peer is not to blame
            return ProbeResult(attempt, False, RejectionReason.INTERNAL_ERROR,
                               f"Node lookup failed: {parse_open_error(e).details}")

        if info is None:
            return ProbeResult(attempt, False, RejectionReason.NOT_ONLINE, "Node not found in graph")
        if not info.addresses:
            return ProbeResult(attempt, False, RejectionReason.NO_ADDRESS, "Node has no addresses in graph")

        self._progress(options, f"{name}: connecting ({len(info.addresses)} addresses)")
        last_error = "Failed to connect"
        for address in info.addresses:
            try:
                self.node.connect(attempt.pubkey, address, timeout)
                self._progress(options, f"{name}: connected via {address}")
                return ProbeResult(attempt, True)
            except RpcError as e:
                last_error = parse_open_error(e).details
                if 'tor' in last_error.lower():
                    self.plugin.log(f"{name} | {address} failed: Tor proxy error ({last_error})", level='debug')
                else:
                    self.plugin.log(f"{name} | {address} failed: {last_error}", level='debug')

        return ProbeResult(attempt, False, RejectionReason.FAILED_TO_CONNECT,
                           f"Failed to connect: {last_error}")

    # =========================================================================
    # Funding protocol
    # =========================================================================

    def _run_funding(self, plan: OpenPlan, attempts: List[OpenAttempt],
                     pending: List[PendingChannel], fee_rate: int,
                     results: List[OpenResult], options: OpenOptions):
        # FUND
        self._progress(options, f"Creating funding transaction for {len(pending)} outputs at {fee_rate} sat/vB")
        try:
            funded = self.node.fund_transaction(
                [(p.funding_address, p.amount) for p in pending], fee_rate
            )
        except RpcError as e:
            raise self._abort_funding(plan, attempts, pending, None, "fund", "Funding failed", e, results, options) from e

        # SIGN
        self._progress(options, "Signing funding transaction")
        try:
            signed = self.node.sign_transaction(funded)
        except RpcError as e:
            raise self._abort_funding(plan, attempts, pending, funded, "sign", "Signing failed", e, results, options) from e

        # BROADCAST
        self._progress(options, "Broadcasting funding transaction")
        try:
            self.node.finalize_pending_channels(pending, signed)
            txid = None
            if signed.to_broadcast:
                txid = self.node.broadcast_transaction(signed)
        except RpcError as e:
            # The transaction may have reached the network regardless; the
            # node is not queried to find out.
            details = parse_open_error(e).details
            self._progress(options, f"Failed to broadcast funding: {details}", level='error')
            for attempt in attempts:
                self._add_result(results, OpenResult(
                    pubkey=attempt.pubkey,
                    success=False,
                    error=f"Broadcast failed: {details}",
                    rejection_reason=RejectionReason.INTERNAL_ERROR,
                ))
            self._save_history(plan, results)
            self._inc(MetricNames.FATAL_BATCHES_TOTAL, {"stage": "broadcast"})
            raise FatalBatchError(f"Broadcast failed: {details}", "broadcast", results) from e

        for attempt in attempts:
            channel_id = attempt.pending.channel_id if attempt.pending else None
            self._add_result(results, OpenResult(
                pubkey=attempt.pubkey,
                success=True,
                channel_id=channel_id or attempt.pubkey,
            ))
        self._progress(options, f"Funding transaction broadcast (txid {txid}), {len(attempts)} channels opening")
        self._save_history(plan, results)

    def _abort_funding(self, plan: OpenPlan, attempts: List[OpenAttempt],
                       pending: List[PendingChannel], funded: Optional[FundedTransaction],
                       stage: str, label: str, error: RpcError,
                       results: List[OpenResult], options: OpenOptions) -> FatalBatchError:
        """Cancel stubs, release the transaction, fail every attempt. Returns the error to raise."""
        details = parse_open_error(error).details
        self._progress(options, f"{label}: {details}", level='error')

        self._progress(options, "Cancelling pending channels", level='warn')
        for channel in pending:
            self.node.cancel_pending_channel(channel)
        if funded is not None:
            self.node.release_transaction(funded)

        for attempt in attempts:
            self._add_result(results, OpenResult(
                pubkey=attempt.pubkey,
                success=False,
                error=f"{label}: {details}",
                rejection_reason=RejectionReason.INTERNAL_ERROR,
            ))
        self._save_history(plan, results)
        self._inc(MetricNames.FATAL_BATCHES_TOTAL, {"stage": stage})
        return FatalBatchError(f"{label}: {details}", stage, results, plan=plan)

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _add_result(self, results: List[OpenResult], result: OpenResult):
        """Record a peer's outcome; a later outcome replaces an earlier one."""
        earlier = [r for r in results if r.pubkey == result.pubkey]
        for r in earlier:
            results.remove(r)
        results.append(result)
        if not earlier:
            self._inc(MetricNames.OPEN_ATTEMPTS_TOTAL)
        if result.success:
            self._inc(MetricNames.OPEN_SUCCESS_TOTAL)
        else:
            reason = result.rejection_reason.value if result.rejection_reason else "unknown"
            self._inc(MetricNames.OPEN_FAILURES_TOTAL, {"reason": reason})

    def _save_history(self, plan: OpenPlan, results: List[OpenResult]):
        now = int(time.time())
        self.database.append_open_history(OpenHistory(date=now, plan=plan, results=list(results)))
        if self.metrics:
            self.metrics.set_gauge(MetricNames.LAST_BATCH_TIMESTAMP, now)

    def _inc(self, name: str, labels=None):
        if self.metrics:
            self.metrics.inc_counter(name, 1, labels)


def format_results(results: Sequence[OpenResult]) -> str:
    """Render results as a short text report."""
    rule = "-" * 80
    successful = [r for r in results if r.success]
    failed = [r for r in results if not r.success]

    lines = ["Results:", rule]
    for r in successful:
        lines.append(f"OK   {r.pubkey[:16]}...  channel: {(r.channel_id or '')[:16]}")
    for r in failed:
        reason = r.rejection_reason.value if r.rejection_reason else "unknown"
        lines.append(f"FAIL {r.pubkey[:16]}...  {reason}: {(r.error or '')[:40]}")
    lines.append(rule)
    lines.append(f"Successful: {len(successful)} | Failed: {len(failed)}")
    return "\n".join(lines)
