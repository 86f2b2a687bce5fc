"""Crash-safe relay loop: forward tick, reverse tick, persist, sleep."""
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from relayer.backfill import run_catch_up
from relayer.config import VERSION
from relayer.event_scanner import EventScanner, ScanResult
from relayer.executor import STATUS_SENT, TransactionExecutor
from relayer.idempotency import IdempotencyGuard
from relayer.rpc_pool import EndpointPool
from relayer.state_store import RelayerState, StateStore, now_iso

logger = logging.getLogger(__name__)

DIRECTIONS = ("forward", "reverse")

PHASE_STARTING = "starting"
PHASE_CATCH_UP = "catch_up"
PHASE_POLLING = "polling"
PHASE_SHUTTING_DOWN = "shutting_down"


@dataclass
class DirectionRuntime:
    name: str
    label: str
    scanner: EventScanner
    guard: IdempotencyGuard
    executor: TransactionExecutor


class Relayer:
    """
    Owns the relayer state and drives both directions.

    Ticks run strictly one after another on the calling thread, so the state
    has a single writer. The health server only reads the store's last
    persisted snapshot and the ``last`` bookkeeping.
    """

    def __init__(
        self,
        store: StateStore,
        state: RelayerState,
        directions: Dict[str, DirectionRuntime],
        pools: Dict[str, EndpointPool],
        poll_interval_ms: int = 5000,
        mode: str = "bidir",
        contracts: Optional[Dict[str, Any]] = None,
        dry_run: bool = False,
    ):
        self.store = store
        self.state = state
        self.directions = directions
        self.pools = pools
        self.poll_interval_ms = poll_interval_ms
        self.mode = mode
        self.contracts = contracts or {}
        self.dry_run = dry_run
        self.phase = PHASE_STARTING
        self.undecodable_logs = 0
        self.last: Dict[str, Optional[str]] = {
            "forwardAt": None,
            "reverseAt": None,
            "errorAt": None,
            "error": None,
        }
        self._stop = threading.Event()
        self.health = None

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    @property
    def enabled(self) -> List[str]:
        return [name for name in DIRECTIONS if name in self.directions]

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def setup_signal_handlers(self) -> None:
        """Graceful shutdown: finish the current step, persist, exit 0."""
        def signal_handler(sig, frame):
            logger.info(f"[shutdown] received {signal.Signals(sig).name}, stopping after current step")
            self.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def stop(self) -> None:
        self._stop.set()

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def record_error(self, where: str, error: BaseException) -> None:
        self.last["errorAt"] = now_iso()
        self.last["error"] = f"{where}: {error}"
        logger.error(f"[{where}] tick failed: {error}")

    def process_window(self, name: str, result: ScanResult) -> None:
        """Guard and execute every decoded event of one scanned window."""
        runtime = self.directions[name]
        direction = self.state.direction(name)
        self.undecodable_logs += result.undecodable

        if result.events:
            logger.info(f"[{name}] {runtime.scanner.event.name} logs={len(result.events)} range={result.from_block}-{result.to_block}")

        for event in result.events:
            decision = runtime.guard.check(direction, event.nonce)
            if decision.skip:
                logger.info(f"[skip] {name} nonce={event.nonce} ({decision.source}): {decision.reason}")
                continue

            logger.info(f"[{runtime.label}] {name} nonce={event.nonce} amount={event.amount} to={event.actor}")
            outcome = runtime.executor.execute(event, direction)
            if outcome.status != STATUS_SENT:
                logger.info(f"[{name}] nonce={event.nonce} outcome={outcome.status} {outcome.reason or ''}".rstrip())

    def tick(self, name: str) -> None:
        """
        One scan-resolve-guard-execute pass for one direction.

        The cursor advances past the scanned window only when the pass
        completes; an exception leaves it in place for the next interval.
        """
        runtime = self.directions[name]
        cursor = self.state.direction(name).cursor

        result = runtime.scanner.scan(cursor)
        if result is not None:
            self.process_window(name, result)
            cursor.last_seen_block = result.to_block
            cursor.advance_to(result.to_block + 1)

        self.store.save(self.state)
        self.last[f"{name}At"] = now_iso()

    def run_once(self) -> bool:
        """Run every enabled direction once. Returns True if all succeeded."""
        ok = True
        for name in self.enabled:
            if not self.running:
                break
            try:
                self.tick(name)
            except Exception as e:
                ok = False
                self.record_error(name, e)
                self._persist_after_failure()
        if ok:
            self.last["error"] = None
        return ok

    def _persist_after_failure(self) -> None:
        # skip-cache entries written before the failure must survive
        try:
            self.store.save(self.state)
        except OSError as e:
            logger.error(f"[state] save failed: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self, catch_up_blocks: int = 0, once: bool = False) -> None:
        try:
            if catch_up_blocks > 0:
                self.phase = PHASE_CATCH_UP
                run_catch_up(self, catch_up_blocks)

            self.phase = PHASE_POLLING
            logger.info(f"[loop] poll={self.poll_interval_ms}ms | directions={','.join(self.enabled)}")
            while self.running:
                self.run_once()
                if once:
                    break
                self._stop.wait(self.poll_interval_ms / 1000.0)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.phase = PHASE_SHUTTING_DOWN
        logger.info("[shutdown] saving state...")
        try:
            self.store.save(self.state)
        except OSError as e:
            logger.error(f"[shutdown] state save failed: {e}")
        if self.health is not None:
            self.health.stop()
        logger.info("[shutdown] bye")

    # ------------------------------------------------------------------
    # Health view
    # ------------------------------------------------------------------

    def public_status(self) -> Dict[str, Any]:
        snapshot = self.store.snapshot()

        def cursor_view(name: str) -> Dict[str, Any]:
            data = snapshot.get(name) or {}
            return {
                "chainId": data.get("chainId"),
                "nextBlock": data.get("nextBlock"),
                "lastSeenBlock": data.get("lastSeenBlock"),
                "lastProcessed": data.get("lastProcessed"),
                "skipped": len(data.get("skip") or {}),
            }

        return {
            "ok": self.last.get("error") is None,
            "version": VERSION,
            "time": now_iso(),
            "phase": self.phase,
            "mode": self.mode,
            "dryRun": self.dry_run,
            "contracts": self.contracts,
            "rpc": {label: pool.describe() for label, pool in self.pools.items()},
            "state": {
                "file": str(self.store.path),
                "updatedAt": snapshot.get("updatedAt"),
                "forward": cursor_view("forward"),
                "reverse": cursor_view("reverse"),
            },
            "undecodableLogs": self.undecodable_logs,
            "lastError": self.last.get("error"),
            "last": dict(self.last),
        }
