"""
Node RPC client for cl-batch-open

Thin wrapper over the Core Lightning JSON-RPC (pyln-client) exposing exactly
the calls the batch opener needs. The handle is passed explicitly to the
batch opener; there is no module-level connection.

Remote failures surface as pyln.client.RpcError and are left to propagate
(a batch start failure is wrapped as ChannelStartError naming the peer);
classifying them is the batch opener's job.
"""

import concurrent.futures
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from pyln.client import RpcError

from .error_classifier import is_node_wide_error


# Channel states that no longer count as an active or pending channel
CLOSED_CHANNEL_STATES: Set[str] = {
    "CHANNELD_SHUTTING_DOWN",
    "CLOSINGD_SIGEXCHANGE",
    "CLOSINGD_COMPLETE",
    "AWAITING_UNILATERAL",
    "FUNDING_SPEND_SEEN",
    "ONCHAIN",
    "CLOSED",
}


class ConnectTimeout(RpcError):
    """Raised when a connect attempt does not complete within its timeout."""
    def __init__(self, pubkey: str, address: str, timeout: float):
        self.pubkey = pubkey
        self.address = address
        super().__init__(
            "connect",
            {"id": pubkey, "host": address},
            f"connect timeout after {timeout}s"
        )


class ChannelStartError(RpcError):
    """
    A fundchannel_start failure inside a batch.

    pubkey is the peer to blame, or None when the failure is our node's own
    (no funds, still syncing) and says nothing about the peer.
    """
    def __init__(self, error: RpcError, pubkey: Optional[str]):
        super().__init__(error.method, error.payload, error.error)
        self.pubkey = pubkey


@dataclass
class NodeInfo:
    """Gossip view of a node. addresses is empty when it announces none."""
    pubkey: str
    alias: str
    addresses: List[str]


@dataclass
class PendingChannel:
    """
    A channel stub started with broadcast deferred.

    channel_id is filled in once the funding transaction has been attached.
    """
    pubkey: str
    amount: int
    funding_address: str
    scriptpubkey: Optional[str] = None
    channel_id: Optional[str] = None


@dataclass
class FundedTransaction:
    """An unsigned funding transaction with its inputs reserved."""
    psbt: str
    txid: Optional[str] = None
    unsigned_tx: Optional[str] = None


@dataclass
class SignedTransaction:
    """Signed funding transaction; to_broadcast is set when it still needs sending."""
    psbt: str
    to_broadcast: Optional[str] = None


def _format_address(addr: Dict[str, Any]) -> Optional[str]:
    host = addr.get("address")
    if not host:
        return None
    port = addr.get("port")
    if addr.get("type") == "ipv6":
        host = f"[{host}]"
    return f"{host}:{port}" if port else host


class NodeClient:
    """
    RPC handle used by the batch opener.

    Args:
        rpc: pyln LightningRpc (plugin.rpc)
        plugin: pyln Plugin, for logging
        announce: Whether opened channels are announced to the network
    """

    def __init__(self, rpc, plugin, announce: bool = True):
        self.rpc = rpc
        self.plugin = plugin
        self.announce = announce

    # =========================================================================
    # Peer / Graph queries
    # =========================================================================

    def get_open_peer_ids(self) -> Set[str]:
        """Peers we have an active or pending channel with."""
        result = self.rpc.call("listpeerchannels", {})
        return {
            ch["peer_id"]
            for ch in result.get("channels", [])
            if ch.get("state") not in CLOSED_CHANNEL_STATES
        }

    def get_connected_peer_ids(self) -> Set[str]:
        result = self.rpc.call("listpeers", {})
        return {p["id"] for p in result.get("peers", []) if p.get("connected")}

    def get_node_info(self, pubkey: str) -> Optional[NodeInfo]:
        """None when the node is not in our gossip graph."""
        result = self.rpc.call("listnodes", {"id": pubkey})
        nodes = result.get("nodes", [])
        if not nodes:
            return None
        node = nodes[0]
        addresses = [a for a in (_format_address(x) for x in node.get("addresses", [])) if a]
        return NodeInfo(pubkey=pubkey, alias=node.get("alias", ""), addresses=addresses)

    def get_node_addresses(self, pubkey: str) -> Optional[List[str]]:
        info = self.get_node_info(pubkey)
        return info.addresses if info else None

    def connect(self, pubkey: str, address: str, timeout: float) -> Dict[str, Any]:
        """
        Connect to a peer at one address.

        Every call gets its own worker, so the timeout starts when the call
        does. A timed out call keeps its thread until the node gives up on
        the socket.

        Raises:
            ConnectTimeout: the attempt did not finish within timeout
            RpcError: the node reported a connection failure
        """
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="batchopen-connect"
        )
        try:
            future = executor.submit(self.rpc.call, "connect", {"id": f"{pubkey}@{address}"})
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            raise ConnectTimeout(pubkey, address, timeout)
        finally:
            executor.shutdown(wait=False)

    # =========================================================================
    # Funding protocol
    # =========================================================================

    def open_channels_batch(self, peers: Sequence[Tuple[str, int]]) -> List[PendingChannel]:
        """
        Start a channel with every peer, broadcast deferred.

        All-or-nothing: when one peer fails the stubs already started are
        cancelled.

        Raises:
            ChannelStartError: pubkey names the failing peer, or is None when
                the error is node-wide
        """
        started: List[PendingChannel] = []
        for pubkey, amount in peers:
            try:
                result = self.rpc.call("fundchannel_start", {
                    "id": pubkey,
                    "amount": amount,
                    "announce": self.announce,
                })
            except RpcError as e:
                for pending in started:
                    self.cancel_pending_channel(pending)
                raise ChannelStartError(e, None if is_node_wide_error(e) else pubkey) from e
            started.append(PendingChannel(
                pubkey=pubkey,
                amount=amount,
                funding_address=result["funding_address"],
                scriptpubkey=result.get("scriptpubkey"),
            ))
        return started

    def open_channel(self, pubkey: str, amount: int, fee_rate: int) -> Optional[str]:
        """
        Open one channel in its own transaction (fundchannel). Returns the channel id.

        Used when a batch cannot be started.
        """
        result = self.rpc.call("fundchannel", {
            "id": pubkey,
            "amount": amount,
            "feerate": f"{fee_rate * 1000}perkb",
            "announce": self.announce,
        })
        return result.get("channel_id")

    def fund_transaction(self, outputs: Sequence[Tuple[str, int]], fee_rate: int) -> FundedTransaction:
        """Build one transaction paying every (address, sats) output. fee_rate is sat/vB."""
        result = self.rpc.call("txprepare", {
            "outputs": [{address: amount} for address, amount in outputs],
            "feerate": f"{fee_rate * 1000}perkb",
        })
        return FundedTransaction(
            psbt=result["psbt"],
            txid=result.get("txid"),
            unsigned_tx=result.get("unsigned_tx"),
        )

    def sign_transaction(self, funded: FundedTransaction) -> SignedTransaction:
        result = self.rpc.call("signpsbt", {"psbt": funded.psbt})
        signed = result["signed_psbt"]
        # fundchannel_complete never broadcasts, so the signed PSBT must be sent
        return SignedTransaction(psbt=signed, to_broadcast=signed)

    def finalize_pending_channels(self, pending: Sequence[PendingChannel],
                                  signed: SignedTransaction) -> List[PendingChannel]:
        """Attach the funding transaction to every stub; fills in channel ids."""
        for channel in pending:
            result = self.rpc.call("fundchannel_complete", {
                "id": channel.pubkey,
                "psbt": signed.psbt,
            })
            channel.channel_id = result.get("channel_id")
        return list(pending)

    def broadcast_transaction(self, signed: SignedTransaction) -> Optional[str]:
        """Send the signed transaction. Returns the txid."""
        result = self.rpc.call("sendpsbt", {"psbt": signed.to_broadcast or signed.psbt})
        return result.get("txid")

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cancel_pending_channel(self, pending: PendingChannel) -> bool:
        """Best-effort cancel of an unfunded stub."""
        try:
            self.rpc.call("fundchannel_cancel", {"id": pending.pubkey})
            return True
        except RpcError as e:
            self.plugin.log(
                f"Failed to cancel pending channel with {pending.pubkey[:12]}...: {e}",
                level='warn'
            )
            return False

    def release_transaction(self, funded: FundedTransaction) -> bool:
        """Best-effort unreserve of a prepared transaction's inputs."""
        if not funded.txid:
            return False
        try:
            self.rpc.call("txdiscard", {"txid": funded.txid})
            return True
        except RpcError as e:
            self.plugin.log(f"Failed to discard funding tx {funded.txid}: {e}", level='warn')
            return False

    def get_chain_balance(self) -> Dict[str, int]:
        """Unreserved on-chain funds in sats."""
        result = self.rpc.call("listfunds", {})
        confirmed = 0
        unconfirmed = 0
        for output in result.get("outputs", []):
            if output.get("reserved"):
                continue
            amount_msat = output.get("amount_msat", 0)
            if isinstance(amount_msat, str):
                amount_msat = int(amount_msat.replace("msat", ""))
            sats = int(amount_msat) // 1000
            if output.get("status") == "confirmed":
                confirmed += sats
            elif output.get("status") == "unconfirmed":
                unconfirmed += sats
        return {"confirmed_sats": confirmed, "unconfirmed_sats": unconfirmed}
