"""
Error Classifier module for cl-batch-open

Turns an arbitrary remote error (string, RpcError, other exception, or an
[code, message, context] triple) into a single message string and then into
(reason, optional detected minimum, optional implicated peer).

Rule order matters: the first matching rule wins, so the specific minimum
channel size patterns come before the generic connectivity and error tokens.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from pyln.client import RpcError

from .models import RejectionReason


SATS_PER_BTC = 100_000_000

# Added on top of a detected minimum when the peer's nominal minimum hides
# reserve/fee overhead (see _overhead_adjusted)
MIN_SIZE_SAFETY_BUFFER_SATS = 10_000

# Compressed secp256k1 public key, not part of a longer hex run
PUBKEY_PATTERN = re.compile(r'(?<![0-9a-fA-F])(0[23][0-9a-fA-F]{64})(?![0-9a-fA-F])')

_BELOW_BTC = re.compile(r'below\D*?(\d+(?:\.\d+)?)\s*btc', re.IGNORECASE)
_BELOW_SAT = re.compile(r'below\D*?(\d+)\s*sat', re.IGNORECASE)
_MINIMUM = re.compile(r'(?:minimum|at least)\D*?(\d+(?:\.\d+)?)(\s*btc)?', re.IGNORECASE)
_CHAN_SIZE = re.compile(r'chan(?:nel)?[ _]size\D*?(\d+(?:\.\d+)?)(\s*btc)?', re.IGNORECASE)

_FUNDING_SAT = re.compile(r'funding\s+(\d+)\s*sat', re.IGNORECASE)
_CAPACITY_SAT = re.compile(r'channel capacity is\s+(\d+)\s*sat', re.IGNORECASE)

_CONNECT = re.compile(r'connect|dial|\btimeout\b|\btor\b|\bproxy\b', re.IGNORECASE)
_OFFLINE = re.compile(r'offline|not online', re.IGNORECASE)
_NO_ADDRESS = re.compile(r'no (?:known )?address|no route', re.IGNORECASE)
_REJECTED = re.compile(r'reject|denied|\bdeny\b|refus', re.IGNORECASE)
_ANCHORS = re.compile(r'anchor|feature', re.IGNORECASE)
_TOO_MANY_PENDING = re.compile(r'pending channels exceed maximum', re.IGNORECASE)
_INTERNAL = re.compile(
    r'remote cancel|internal|funding failed|cancell?ed funding', re.IGNORECASE
)
_BARE_ERROR = re.compile(r'\berror\b', re.IGNORECASE)

# Conditions of our own node; no peer is to blame for these
_NODE_WIDE = re.compile(
    r'still syncing|cannot afford|could not afford|insufficient funds|not enough funds'
    r'|output is dust|exceeds maximum chan(?:nel)? size',
    re.IGNORECASE
)

# lightningd funding error codes: FUNDING_MAX_EXCEEDED, FUNDING_CANNOT_AFFORD,
# FUNDING_OUTPUT_IS_DUST, FUNDING_STILL_SYNCING_BITCOIN
NODE_WIDE_FUNDING_CODES = frozenset({300, 301, 302, 304})


@dataclass
class ParsedOpenError:
    """Classification of a remote error."""
    reason: RejectionReason
    details: str
    min_size: Optional[int] = None
    pubkey: Optional[str] = None

    def to_dict(self):
        return {
            "reason": self.reason.value,
            "details": self.details,
            "min_size": self.min_size,
            "pubkey": self.pubkey,
        }


def _json(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def normalize_error(error: Any) -> str:
    """Collapse any error representation into one message string."""
    if isinstance(error, str):
        return error

    if isinstance(error, (list, tuple)) and len(error) >= 2:
        context = _json(error[2]) if len(error) > 2 and error[2] else ""
        return f"{error[0]} {error[1]} {context}".strip()

    if isinstance(error, RpcError):
        # The request payload is left out: it names the peer we asked, not
        # the peer that failed
        err = error.error
        if isinstance(err, dict):
            message = str(err.get("message", ""))
            if err.get("data"):
                message = f"{message} {_json(err['data'])}"
        else:
            message = str(err)
        return f"{error.method}: {message}".strip()

    if isinstance(error, BaseException):
        return str(error)

    return _json(error)


def is_node_wide_error(error: Any) -> bool:
    """True when a funding error comes from our node (no funds, syncing) rather than the peer."""
    if isinstance(error, RpcError) and isinstance(error.error, dict):
        if error.error.get("code") in NODE_WIDE_FUNDING_CODES:
            return True
    return bool(_NODE_WIDE.search(normalize_error(error)))


def extract_pubkey(message: str) -> Optional[str]:
    """First compressed node id in the message, lowercased."""
    match = PUBKEY_PATTERN.search(message)
    return match.group(1).lower() if match else None


def _to_sats(value: str, is_btc: bool) -> int:
    if is_btc:
        return int(round(float(value) * SATS_PER_BTC))
    return int(float(value))


def _overhead_adjusted(message: str, minimum: int) -> int:
    """
    Bump a detected minimum by the overhead the peer subtracted.

    "funding 1000000sat ... channel capacity is 979056sat, which is below
    1000000sat" means 20944 sats went to reserves/fees; funding exactly the
    nominal minimum would fail again.
    """
    funding = _FUNDING_SAT.search(message)
    capacity = _CAPACITY_SAT.search(message)
    if funding and capacity:
        overhead = int(funding.group(1)) - int(capacity.group(1))
        if overhead > 0:
            return minimum + overhead + MIN_SIZE_SAFETY_BUFFER_SATS
    return minimum


def _min_below_btc(message: str) -> Optional[int]:
    m = _BELOW_BTC.search(message)
    return _to_sats(m.group(1), True) if m else None


def _min_below_sat(message: str) -> Optional[int]:
    m = _BELOW_SAT.search(message)
    return int(m.group(1)) if m else None


def _min_generic(message: str) -> Optional[int]:
    m = _MINIMUM.search(message)
    return _to_sats(m.group(1), bool(m.group(2))) if m else None


def _min_chan_size(message: str) -> Optional[int]:
    m = _CHAN_SIZE.search(message)
    return _to_sats(m.group(1), bool(m.group(2))) if m else None


_MIN_SIZE_RULES: List[Callable[[str], Optional[int]]] = [
    _min_below_btc,
    _min_below_sat,
    _min_generic,
    _min_chan_size,
]

_TOKEN_RULES: List[Tuple[re.Pattern, RejectionReason]] = [
    (_CONNECT, RejectionReason.FAILED_TO_CONNECT),
    (_OFFLINE, RejectionReason.NOT_ONLINE),
    (_NO_ADDRESS, RejectionReason.NO_ADDRESS),
    (_REJECTED, RejectionReason.REJECTED),
    (_ANCHORS, RejectionReason.NO_ANCHORS),
    (_TOO_MANY_PENDING, RejectionReason.TOO_MANY_PENDING),
    (_INTERNAL, RejectionReason.INTERNAL_ERROR),
    (_BARE_ERROR, RejectionReason.INTERNAL_ERROR),
]


def parse_open_error(error: Any) -> ParsedOpenError:
    """
    Classify a channel open / connect error.

    Returns:
        ParsedOpenError; pubkey is None when the failure names no peer
        (batch-wide, not attributable).
    """
    message = normalize_error(error)
    pubkey = extract_pubkey(message)

    for rule in _MIN_SIZE_RULES:
        minimum = rule(message)
        if minimum is not None:
            return ParsedOpenError(
                reason=RejectionReason.MIN_CHANNEL_SIZE,
                details=message,
                min_size=_overhead_adjusted(message, minimum),
                pubkey=pubkey,
            )

    for pattern, reason in _TOKEN_RULES:
        if pattern.search(message):
            return ParsedOpenError(reason=reason, details=message, pubkey=pubkey)

    return ParsedOpenError(reason=RejectionReason.REJECTED, details=message, pubkey=pubkey)
