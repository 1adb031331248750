"""
Tests for the node RPC client.

Tests:
- Open / connected peer queries and graph lookups
- Connect timeout bounding (a hung connect holds no shared worker)
- Batch start is all-or-nothing (stubs cancelled on failure) and names the failing peer
- Single-channel open via fundchannel
- Funding calls map onto the node RPC (feerate units, signed PSBT)
- Best-effort cleanup and chain balance
"""

import threading

import pytest
from pyln.client import RpcError

from batchopen.node_client import (
    ChannelStartError,
    ConnectTimeout,
    FundedTransaction,
    NodeClient,
    PendingChannel,
    SignedTransaction,
)


PEER_A = "02" + "a" * 64
PEER_B = "02" + "b" * 64
PEER_C = "02" + "c" * 64


@pytest.fixture
def client(mock_rpc, mock_plugin):
    return NodeClient(mock_rpc, mock_plugin, announce=True)


def _calls(rpc, method):
    return [c.args[1] for c in rpc.call.call_args_list if c.args[0] == method]


class TestPeerQueries:

    def test_open_peer_ids_skip_closed_states(self, client, mock_rpc):
        mock_rpc.responses["listpeerchannels"] = {"channels": [
            {"peer_id": PEER_A, "state": "CHANNELD_NORMAL"},
            {"peer_id": PEER_B, "state": "CHANNELD_AWAITING_LOCKIN"},
            {"peer_id": PEER_C, "state": "ONCHAIN"},
        ]}
        assert client.get_open_peer_ids() == {PEER_A, PEER_B}

    def test_connected_peer_ids(self, client, mock_rpc):
        mock_rpc.responses["listpeers"] = {"peers": [
            {"id": PEER_A, "connected": True},
            {"id": PEER_B, "connected": False},
        ]}
        assert client.get_connected_peer_ids() == {PEER_A}

    def test_node_info_addresses(self, client, mock_rpc):
        mock_rpc.responses["listnodes"] = {"nodes": [{
            "nodeid": PEER_A,
            "alias": "ALPHA",
            "addresses": [
                {"type": "ipv4", "address": "1.2.3.4", "port": 9735},
                {"type": "ipv6", "address": "2001:db8::1", "port": 9736},
                {"type": "torv3", "address": "abcdef.onion", "port": 9735},
            ],
        }]}
        info = client.get_node_info(PEER_A)
        assert info.alias == "ALPHA"
        assert info.addresses == ["1.2.3.4:9735", "[2001:db8::1]:9736", "abcdef.onion:9735"]

    def test_node_not_in_graph(self, client):
        assert client.get_node_info(PEER_A) is None
        assert client.get_node_addresses(PEER_A) is None


class TestConnect:

    def test_connect_uses_id_at_address(self, client, mock_rpc):
        mock_rpc.responses["connect"] = {"id": PEER_A}
        client.connect(PEER_A, "1.2.3.4:9735", timeout=5)
        assert _calls(mock_rpc, "connect") == [{"id": f"{PEER_A}@1.2.3.4:9735"}]

    def test_connect_timeout(self, client, mock_rpc):
        release = threading.Event()
        mock_rpc.responses["connect"] = lambda payload: release.wait(5)
        try:
            with pytest.raises(ConnectTimeout) as excinfo:
                client.connect(PEER_A, "1.2.3.4:9735", timeout=0.05)
        finally:
            release.set()
        assert excinfo.value.pubkey == PEER_A
        assert excinfo.value.method == "connect"

    def test_hung_connects_do_not_starve_later_ones(self, client, mock_rpc):
        release = threading.Event()

        def connect(payload):
            if "10.0.0." in payload["id"]:
                release.wait(5)
            return {"id": payload["id"].split("@")[0]}

        mock_rpc.responses["connect"] = connect
        try:
            for host in ("10.0.0.1:9735", "10.0.0.2:9735"):
                with pytest.raises(ConnectTimeout):
                    client.connect(PEER_A, host, timeout=0.05)
            assert client.connect(PEER_B, "1.2.3.4:9735", timeout=2) == {"id": PEER_B}
        finally:
            release.set()

    def test_connect_failure_propagates(self, client, mock_rpc):
        mock_rpc.responses["connect"] = RpcError("connect", {"id": PEER_A},
                                                 {"code": 401, "message": "Connection refused"})
        with pytest.raises(RpcError):
            client.connect(PEER_A, "1.2.3.4:9735", timeout=5)


class TestFunding:

    def test_open_channels_batch(self, client, mock_rpc):
        mock_rpc.responses["fundchannel_start"] = lambda payload: {
            "funding_address": f"bc1q{payload['id'][2:8]}",
            "scriptpubkey": "0014" + "00" * 20,
        }
        pending = client.open_channels_batch([(PEER_A, 1_000_000), (PEER_B, 2_000_000)])

        assert [(p.pubkey, p.amount) for p in pending] == [(PEER_A, 1_000_000), (PEER_B, 2_000_000)]
        assert pending[0].funding_address == "bc1qaaaaaa"
        assert _calls(mock_rpc, "fundchannel_start")[1] == {
            "id": PEER_B, "amount": 2_000_000, "announce": True,
        }

    def test_open_channels_batch_cancels_started_stubs(self, client, mock_rpc):
        def start(payload):
            if payload["id"] == PEER_C:
                raise RpcError("fundchannel_start", payload,
                               {"code": 402, "message": "They sent error: channel too small"})
            return {"funding_address": "bc1qxyz"}

        mock_rpc.responses["fundchannel_start"] = start
        mock_rpc.responses["fundchannel_cancel"] = {"cancelled": "ok"}

        with pytest.raises(ChannelStartError) as excinfo:
            client.open_channels_batch([(PEER_A, 1_000_000), (PEER_B, 1_000_000), (PEER_C, 1_000_000)])

        assert excinfo.value.pubkey == PEER_C
        assert excinfo.value.method == "fundchannel_start"
        assert _calls(mock_rpc, "fundchannel_cancel") == [{"id": PEER_A}, {"id": PEER_B}]

    def test_node_wide_start_failure_blames_no_peer(self, client, mock_rpc):
        def start(payload):
            if payload["id"] == PEER_B:
                raise RpcError("fundchannel_start", payload,
                               {"code": 304, "message": "Still syncing with bitcoin network"})
            return {"funding_address": "bc1qxyz"}

        mock_rpc.responses["fundchannel_start"] = start
        mock_rpc.responses["fundchannel_cancel"] = {"cancelled": "ok"}

        with pytest.raises(ChannelStartError) as excinfo:
            client.open_channels_batch([(PEER_A, 1_000_000), (PEER_B, 1_000_000)])

        assert excinfo.value.pubkey is None
        assert _calls(mock_rpc, "fundchannel_cancel") == [{"id": PEER_A}]

    def test_open_channel_single_transaction(self, client, mock_rpc):
        mock_rpc.responses["fundchannel"] = {"tx": "0200", "txid": "dd" * 32, "channel_id": "cc" * 32}

        assert client.open_channel(PEER_A, 1_500_000, fee_rate=2) == "cc" * 32
        assert _calls(mock_rpc, "fundchannel") == [{
            "id": PEER_A, "amount": 1_500_000, "feerate": "2000perkb", "announce": True,
        }]

    def test_fund_transaction_feerate_perkb(self, client, mock_rpc):
        mock_rpc.responses["txprepare"] = {"psbt": "cHNidP8=", "txid": "ff" * 32, "unsigned_tx": "0200"}
        funded = client.fund_transaction([("bc1qa", 1_000_000), ("bc1qb", 2_000_000)], fee_rate=3)

        assert funded.txid == "ff" * 32
        assert _calls(mock_rpc, "txprepare") == [{
            "outputs": [{"bc1qa": 1_000_000}, {"bc1qb": 2_000_000}],
            "feerate": "3000perkb",
        }]

    def test_sign_then_finalize_then_broadcast(self, client, mock_rpc):
        mock_rpc.responses["signpsbt"] = {"signed_psbt": "signed"}
        mock_rpc.responses["fundchannel_complete"] = lambda payload: {
            "channel_id": payload["id"][2:] + "00", "commitments_secured": True,
        }
        mock_rpc.responses["sendpsbt"] = {"tx": "0200", "txid": "ee" * 32}

        signed = client.sign_transaction(FundedTransaction(psbt="unsigned", txid="ff" * 32))
        assert signed == SignedTransaction(psbt="signed", to_broadcast="signed")

        pending = [PendingChannel(pubkey=PEER_A, amount=1, funding_address="x")]
        client.finalize_pending_channels(pending, signed)
        assert pending[0].channel_id == "a" * 64 + "00"

        assert client.broadcast_transaction(signed) == "ee" * 32
        assert _calls(mock_rpc, "sendpsbt") == [{"psbt": "signed"}]


class TestCleanup:

    def test_cancel_failure_is_logged_not_raised(self, client, mock_rpc, mock_plugin):
        mock_rpc.responses["fundchannel_cancel"] = RpcError("fundchannel_cancel", {"id": PEER_A},
                                                            {"code": -1, "message": "no such channel"})
        assert client.cancel_pending_channel(PendingChannel(PEER_A, 1, "x")) is False
        assert mock_plugin.log.call_args.kwargs["level"] == "warn"

    def test_release_transaction(self, client, mock_rpc):
        mock_rpc.responses["txdiscard"] = {"txid": "ff" * 32}
        assert client.release_transaction(FundedTransaction(psbt="p", txid="ff" * 32)) is True
        assert client.release_transaction(FundedTransaction(psbt="p")) is False
        assert _calls(mock_rpc, "txdiscard") == [{"txid": "ff" * 32}]

    def test_chain_balance(self, client, mock_rpc):
        mock_rpc.responses["listfunds"] = {"outputs": [
            {"amount_msat": 5_000_000_000, "status": "confirmed"},
            {"amount_msat": "1000000msat", "status": "unconfirmed"},
            {"amount_msat": 9_000_000_000, "status": "confirmed", "reserved": True},
        ]}
        assert client.get_chain_balance() == {"confirmed_sats": 5_000_000, "unconfirmed_sats": 1_000}
