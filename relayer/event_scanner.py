"""Chunked, confirmation-delayed log scanning for bridge events."""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_bytes, to_checksum_address, to_hex
from web3 import Web3

from relayer.abi_resolver import AbiEvent, AbiParam
from relayer.errors import LogDecodeError
from relayer.rpc_pool import EndpointPool
from relayer.state_store import ChainCursor

logger = logging.getLogger(__name__)

_RECIPIENT_NAME = re.compile(r"^_?to$|recipient|receiver|beneficiary", re.I)
_NONCE_NAME = re.compile(r"nonce", re.I)


@dataclass
class RelayEvent:
    direction: str
    actor: str
    amount: int
    nonce: int
    source_tx: str
    block_number: int
    log_index: int = 0


@dataclass
class ScanResult:
    from_block: int
    to_block: int
    events: List[RelayEvent] = field(default_factory=list)
    undecodable: int = 0


def compute_scan_window(
    from_block: int,
    latest: int,
    confirmations: int,
    max_range: int,
) -> Optional[Tuple[int, int]]:
    """
    Inclusive ``(from_block, to_block)`` to query, or None if nothing is final yet.

    ``to_block`` never exceeds ``latest - confirmations`` and the window spans
    at most ``max_range`` blocks.
    """
    safe_latest = latest - confirmations
    if safe_latest < 0 or from_block > safe_latest:
        return None
    to_block = min(safe_latest, from_block + max(max_range, 1) - 1)
    return from_block, to_block


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return to_bytes(hexstr=value)


def _is_dynamic(param: AbiParam) -> bool:
    return param.type in ("string", "bytes") or param.type.endswith("]") or param.type.startswith("tuple")


def _normalize(param: AbiParam, value: Any) -> Any:
    if param.is_address:
        return to_checksum_address(value)
    return value


def decode_log(event: AbiEvent, log: Dict[str, Any]) -> List[Tuple[AbiParam, Any]]:
    """
    Decode ``log`` against ``event``.

    Indexed dynamic values cannot be recovered from their topic hash and are
    returned as the raw 32-byte topic.

    Raises:
        LogDecodeError: topic or payload does not match the event layout
    """
    topics = [_as_bytes(t) for t in log.get("topics") or []]
    if not topics or to_hex(topics[0]) != event.topic:
        raise LogDecodeError(f"topic0 does not match {event.signature}")

    indexed = [p for p in event.inputs if p.indexed]
    plain = [p for p in event.inputs if not p.indexed]
    if len(topics) - 1 != len(indexed):
        raise LogDecodeError(f"expected {len(indexed)} indexed topics for {event.signature}, got {len(topics) - 1}")

    try:
        data_values = decode([p.canonical_type for p in plain], _as_bytes(log.get("data") or b""))
        topic_values = []
        for param, topic in zip(indexed, topics[1:]):
            if _is_dynamic(param):
                topic_values.append(topic)
            else:
                topic_values.append(decode([param.canonical_type], topic)[0])
    except (DecodingError, ValueError, TypeError) as e:
        raise LogDecodeError(f"{event.signature}: {e}") from e

    data_iter = iter(data_values)
    topic_iter = iter(topic_values)
    decoded = []
    for param in event.inputs:
        value = next(topic_iter) if param.indexed else next(data_iter)
        decoded.append((param, _normalize(param, value)))
    return decoded


def extract_relay_fields(decoded: List[Tuple[AbiParam, Any]]) -> Tuple[str, int, int]:
    """
    Pick (recipient, amount, nonce) from decoded event values.

    The recipient is an address parameter named like a recipient, else the
    first address. A parameter named ``nonce`` wins the nonce role; otherwise
    the first integer is the amount and the second the nonce.
    """
    addresses = [(p, v) for p, v in decoded if p.is_address]
    integers = [(p, v) for p, v in decoded if p.is_integer]
    if not addresses or len(integers) < 2:
        raise LogDecodeError("event lacks an address and two integers")

    recipient = next((v for p, v in addresses if _RECIPIENT_NAME.search(p.name)), addresses[0][1])

    named_nonce = [(p, v) for p, v in integers if _NONCE_NAME.search(p.name)]
    if named_nonce:
        nonce = named_nonce[0][1]
        amount = next(v for p, v in integers if p is not named_nonce[0][0])
    else:
        amount, nonce = integers[0][1], integers[1][1]
    return recipient, int(amount), int(nonce)


class EventScanner:
    """Fetch and decode one event type emitted by one contract."""

    def __init__(
        self,
        pool: EndpointPool,
        direction: str,
        contract_address: str,
        event: AbiEvent,
        confirmations: int,
        max_range: int,
    ):
        self.pool = pool
        self.direction = direction
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.event = event
        self.confirmations = confirmations
        self.max_range = max_range

    def latest_block(self) -> int:
        latest, _ = self.pool.try_call(lambda w3, i: int(w3.eth.block_number), "eth_blockNumber")
        return latest

    def safe_head(self, latest: Optional[int] = None) -> int:
        if latest is None:
            latest = self.latest_block()
        return max(latest - self.confirmations, 0)

    def window_for(self, from_block: int, latest: int) -> Optional[Tuple[int, int]]:
        return compute_scan_window(from_block, latest, self.confirmations, self.max_range)

    def fetch(self, from_block: int, to_block: int) -> ScanResult:
        """Query and decode logs in ``[from_block, to_block]``."""
        log_filter = {
            "address": self.contract_address,
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [self.event.topic],
        }
        logs, _ = self.pool.try_call(lambda w3, i: w3.eth.get_logs(log_filter), "eth_getLogs")

        result = ScanResult(from_block=from_block, to_block=to_block)
        for log in logs:
            tx_hash = log.get("transactionHash")
            tx_hex = to_hex(_as_bytes(tx_hash)) if tx_hash is not None else ""
            try:
                recipient, amount, nonce = extract_relay_fields(decode_log(self.event, log))
            except LogDecodeError as e:
                result.undecodable += 1
                logger.warning(f"[{self.direction}] skipping undecodable log tx={tx_hex} block={log.get('blockNumber')}: {e}")
                continue
            result.events.append(RelayEvent(
                direction=self.direction,
                actor=recipient,
                amount=amount,
                nonce=nonce,
                source_tx=tx_hex,
                block_number=int(log.get("blockNumber") or 0),
                log_index=int(log.get("logIndex") or 0),
            ))
        result.events.sort(key=lambda e: (e.block_number, e.log_index))
        return result

    def scan(self, cursor: ChainCursor) -> Optional[ScanResult]:
        """
        Fetch the next window after ``cursor``.

        An auto cursor (``next_block == 0``) is first pinned to the current
        safe head. Returns None when no new block is final yet. The cursor is
        not advanced here.
        """
        latest = self.latest_block()
        if cursor.next_block <= 0:
            cursor.next_block = self.safe_head(latest)
            logger.info(f"[{self.direction}] cursor auto-start at safe block {cursor.next_block}")
        window = self.window_for(cursor.next_block, latest)
        if window is None:
            return None
        return self.fetch(*window)
