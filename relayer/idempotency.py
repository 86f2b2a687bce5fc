"""Two-level duplicate protection: local skip cache, then the on-chain view."""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from web3 import Web3

from relayer.abi_resolver import AbiFunction
from relayer.rpc_pool import EndpointPool
from relayer.state_store import DirectionState

logger = logging.getLogger(__name__)

REASON_PROCESSED_VIEW = "already processed (destination view)"


@dataclass
class GuardDecision:
    skip: bool
    reason: Optional[str] = None
    source: str = "none"  # cache | view | none


def _call_processed(w3: Any, address: str, view: AbiFunction, nonce: int) -> bool:
    contract = w3.eth.contract(address=address, abi=[view.raw])
    return bool(contract.functions[view.name](nonce).call())


class IdempotencyGuard:
    """
    Decide whether a nonce still needs relaying.

    The local skip cache is consulted first and costs nothing. When the
    destination contract exposes a processed-nonce view it is queried next;
    a positive answer is cached. Without such a view events pass through and
    duplicates are caught by the executor's simulation.
    """

    def __init__(self, pool: EndpointPool, destination: str, processed_view: Optional[AbiFunction]):
        self.pool = pool
        self.destination = Web3.to_checksum_address(destination)
        self.processed_view = processed_view

    def check(self, direction: DirectionState, nonce: int) -> GuardDecision:
        key = str(nonce)
        if direction.is_skipped(nonce):
            return GuardDecision(skip=True, reason=direction.skip[key], source="cache")

        if self.processed_view is None:
            return GuardDecision(skip=False)

        view = self.processed_view
        processed, _ = self.pool.try_call(
            lambda w3, i: _call_processed(w3, self.destination, view, nonce),
            view.name,
        )
        if processed:
            direction.mark_skip(nonce, REASON_PROCESSED_VIEW)
            return GuardDecision(skip=True, reason=REASON_PROCESSED_VIEW, source="view")
        return GuardDecision(skip=False)
