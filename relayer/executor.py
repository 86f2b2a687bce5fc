"""
Executor for relay transactions on the destination chain.

Each event goes through simulate -> submit -> confirm. Submission always
carries an explicit gas limit; provider gas estimation is never used.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_account import Account
from eth_utils import to_hex
from web3 import Web3
from web3.exceptions import ContractLogicError

from relayer.abi_resolver import AbiFunction, CallRoles, build_call_args
from relayer.event_scanner import RelayEvent
from relayer.rpc_pool import EndpointPool
from relayer.state_store import DirectionState

logger = logging.getLogger(__name__)

STATUS_SENT = "sent"
STATUS_DRY_RUN = "dry_run"
STATUS_SIMULATION_REVERTED = "simulation_reverted"
STATUS_NON_RETRYABLE = "non_retryable"
STATUS_EXHAUSTED = "retries_exhausted"
STATUS_PAUSED = "destination_paused"

REASON_RELAYED = "relayed"

# On-chain guard reasons that will never succeed on retry.
NON_RETRYABLE_MARKERS = (
    "already processed",
    "already-processed",
    "alreadyprocessed",
    "nonce used",
    "nonce already used",
    "already claimed",
    "already released",
    "already minted",
)

# Temporary refusals: nothing is cached, CatchUp relays the nonce once lifted.
PAUSED_MARKERS = (
    "paused",
    "enforcedpause",
)


def is_non_retryable(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in NON_RETRYABLE_MARKERS)


def is_paused(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in PAUSED_MARKERS)


def revert_reason(error: Exception) -> str:
    message = getattr(error, "message", None)
    if message:
        return str(message)
    return str(error) or error.__class__.__name__


@dataclass
class CallPlan:
    target: str
    function_name: str
    args: List[Any]
    gas_limit: int
    function: AbiFunction = field(repr=False, default=None)


@dataclass
class ExecutionResult:
    status: str
    nonce: int
    function_name: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    endpoint_index: Optional[int] = None
    reason: Optional[str] = None


def _contract_call(w3: Any, plan: CallPlan):
    contract = w3.eth.contract(address=plan.target, abi=[plan.function.raw])
    return contract.functions[plan.function_name](*plan.args)


def _simulate(w3: Any, plan: CallPlan, sender: str) -> Any:
    return _contract_call(w3, plan).call({"from": sender})


def _build_tx_params(
    w3: Any,
    sender: str,
    gas_limit: int,
    max_fee_per_gas: int = 0,
    max_priority_fee: int = 0,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "from": sender,
        "nonce": w3.eth.get_transaction_count(sender, "pending"),
        "chainId": w3.eth.chain_id,
        "gas": gas_limit,
    }
    if max_fee_per_gas:
        params["maxFeePerGas"] = max_fee_per_gas
        params["maxPriorityFeePerGas"] = min(max_priority_fee or max_fee_per_gas, max_fee_per_gas)
    return params


def _sign_and_send(w3: Any, plan: CallPlan, account: Any, max_fee_per_gas: int, max_priority_fee: int) -> Tuple[Any, str]:
    params = _build_tx_params(w3, account.address, plan.gas_limit, max_fee_per_gas, max_priority_fee)
    tx = _contract_call(w3, plan).build_transaction(params)
    signed = account.sign_transaction(tx)
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    return w3, to_hex(tx_hash)


def _wait_for_receipt(w3: Any, tx_hash: str, timeout: int) -> Any:
    return w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)


class TransactionExecutor:
    """
    Relay one direction's events onto its destination contract.

    ``functions`` holds the resolved candidates, best first. Only the first is
    used unless ``fallthrough`` is enabled, in which case a simulation revert
    moves on to the next candidate.
    """

    def __init__(
        self,
        pool: EndpointPool,
        label: str,
        target: str,
        functions: List[AbiFunction],
        gas_limit: int,
        private_key: str,
        source_chain_id: int,
        destination_chain_id: int,
        dry_run: bool = False,
        attempts: int = 3,
        retry_delay_ms: int = 3000,
        receipt_timeout: int = 120,
        max_fee_per_gas: int = 0,
        max_priority_fee: int = 0,
        fallthrough: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.pool = pool
        self.label = label
        self.target = Web3.to_checksum_address(target)
        self.functions = functions
        self.gas_limit = gas_limit
        self.account = Account.from_key(private_key)
        self.source_chain_id = source_chain_id
        self.destination_chain_id = destination_chain_id
        self.dry_run = dry_run
        self.attempts = max(attempts, 1)
        self.retry_delay_ms = retry_delay_ms
        self.receipt_timeout = receipt_timeout
        self.max_fee_per_gas = max_fee_per_gas
        self.max_priority_fee = max_priority_fee
        self.fallthrough = fallthrough
        self.sleep = sleep

    @property
    def sender(self) -> str:
        return self.account.address

    def plan_for(self, event: RelayEvent, function: AbiFunction) -> CallPlan:
        roles = CallRoles(
            recipient=event.actor,
            amount=event.amount,
            nonce=event.nonce,
            source_chain_id=self.source_chain_id,
            destination_chain_id=self.destination_chain_id,
        )
        return CallPlan(
            target=self.target,
            function_name=function.name,
            args=build_call_args(function, roles),
            gas_limit=self.gas_limit,
            function=function,
        )

    def execute(self, event: RelayEvent, direction: DirectionState) -> ExecutionResult:
        candidates = self.functions if self.fallthrough else self.functions[:1]
        result = ExecutionResult(status=STATUS_SIMULATION_REVERTED, nonce=event.nonce)
        for position, function in enumerate(candidates):
            plan = self.plan_for(event, function)
            if self.dry_run:
                logger.info(f"[{self.label}] [dry-run] nonce={event.nonce} would call {function.signature} args={plan.args} gas={plan.gas_limit}")
                return ExecutionResult(status=STATUS_DRY_RUN, nonce=event.nonce, function_name=function.name)

            result = self._execute_plan(event, plan, direction)
            if result.status != STATUS_SIMULATION_REVERTED or position == len(candidates) - 1:
                return result
            logger.info(f"[{self.label}] nonce={event.nonce} trying next candidate after {function.name} reverted")
        return result

    def _execute_plan(self, event: RelayEvent, plan: CallPlan, direction: DirectionState) -> ExecutionResult:
        last_error: Optional[str] = None
        for attempt in range(1, self.attempts + 1):
            # re-simulated every attempt so a tx mined after a receipt timeout
            # trips the contract's own duplicate guard
            try:
                self.pool.try_call(lambda w3, i: _simulate(w3, plan, self.sender), f"simulate {plan.function_name}")
            except ContractLogicError as e:
                reason = revert_reason(e)
                logger.warning(f"[{self.label}] simulation reverted nonce={event.nonce} fn={plan.function_name}: {reason}")
                if is_paused(reason):
                    return self._deferred(event, plan, reason)
                if is_non_retryable(reason):
                    direction.mark_skip(event.nonce, f"non-retryable revert: {reason}")
                    return ExecutionResult(STATUS_NON_RETRYABLE, event.nonce, plan.function_name, reason=reason)
                return ExecutionResult(STATUS_SIMULATION_REVERTED, event.nonce, plan.function_name, reason=reason)
            except Exception as e:
                last_error = str(e)
                logger.warning(f"[{self.label}] simulation failed nonce={event.nonce} attempt {attempt}/{self.attempts}: {last_error}")
                self._pause(attempt)
                continue

            try:
                (w3, tx_hash), endpoint_index = self.pool.try_call(
                    lambda w3, i: _sign_and_send(w3, plan, self.account, self.max_fee_per_gas, self.max_priority_fee),
                    f"send {plan.function_name}",
                )
                logger.info(f"[{self.label}] nonce={event.nonce} sent {tx_hash} via endpoint #{endpoint_index}")
                receipt = _wait_for_receipt(w3, tx_hash, self.receipt_timeout)
            except Exception as e:
                last_error = revert_reason(e)
                if is_paused(last_error):
                    return self._deferred(event, plan, last_error)
                if is_non_retryable(last_error):
                    logger.warning(f"[{self.label}] nonce={event.nonce} abandoned: {last_error}")
                    direction.mark_skip(event.nonce, f"non-retryable: {last_error}")
                    return ExecutionResult(STATUS_NON_RETRYABLE, event.nonce, plan.function_name, reason=last_error)
                logger.warning(f"[{self.label}] send failed nonce={event.nonce} attempt {attempt}/{self.attempts}: {last_error}")
                self._pause(attempt)
                continue

            if int(receipt["status"]) != 1:
                last_error = f"transaction {tx_hash} reverted in block {receipt['blockNumber']}"
                logger.warning(f"[{self.label}] nonce={event.nonce} attempt {attempt}/{self.attempts}: {last_error}")
                self._pause(attempt)
                continue

            block_number = int(receipt["blockNumber"])
            direction.mark_skip(event.nonce, REASON_RELAYED)
            direction.cursor.last_processed = {
                "nonce": str(event.nonce),
                "blockNumber": event.block_number,
                "sourceTx": event.source_tx,
                "destTx": tx_hash,
                "destBlock": block_number,
                "endpointIndex": endpoint_index,
            }
            logger.info(f"  srcTx={event.source_tx}")
            logger.info(f"  dstTx={tx_hash}")
            logger.info(f"  confirmed block={block_number} ({self.pool.label} endpoint #{endpoint_index})")
            return ExecutionResult(
                status=STATUS_SENT,
                nonce=event.nonce,
                function_name=plan.function_name,
                tx_hash=tx_hash,
                block_number=block_number,
                endpoint_index=endpoint_index,
            )

        logger.error(f"[{self.label}] nonce={event.nonce} abandoned after {self.attempts} attempts: {last_error}")
        return ExecutionResult(STATUS_EXHAUSTED, event.nonce, plan.function_name, reason=last_error)

    def _deferred(self, event: RelayEvent, plan: CallPlan, reason: str) -> ExecutionResult:
        logger.warning(f"[{self.label}] nonce={event.nonce} deferred, destination paused; relay it with --catch-up once unpaused")
        return ExecutionResult(STATUS_PAUSED, event.nonce, plan.function_name, reason=reason)

    def _pause(self, attempt: int) -> None:
        if attempt < self.attempts and self.retry_delay_ms > 0:
            self.sleep(self.retry_delay_ms / 1000.0)
