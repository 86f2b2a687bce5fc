"""Main entry point for the bridge relayer."""
import warnings

# Suppress eth_utils network warnings - must be before other imports
warnings.filterwarnings("ignore", category=UserWarning, module="eth_utils")
warnings.filterwarnings("ignore", message=".*does not have a valid ChainId.*")

import argparse
import logging
import sys
from typing import Dict, List, Optional

from relayer.abi_resolver import (
    FORWARD_EVENT,
    FORWARD_FUNCTION,
    REVERSE_EVENT,
    REVERSE_FUNCTION,
    find_processed_view,
    load_abi,
    parse_abi,
    pick_event,
    resolve_functions,
)
from relayer.config import VERSION, RelayerConfig
from relayer.errors import ConfigError
from relayer.event_scanner import EventScanner
from relayer.executor import TransactionExecutor
from relayer.health import HealthServer, build_app
from relayer.idempotency import IdempotencyGuard
from relayer.orchestrator import DirectionRuntime, Relayer
from relayer.rpc_pool import EndpointPool
from relayer.state_store import StateStore

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="relayer", description="Bidirectional bridge relayer")
    parser.add_argument("--once", action="store_true", help="run a single iteration and exit")
    parser.add_argument("--catch-up", action="store_true", help="backfill the lookback window before polling")
    parser.add_argument("--catch-up-blocks", type=int, default=None, help="lookback window in blocks")
    parser.add_argument("--dry-run", action="store_true", help="log intended calls instead of sending")
    parser.add_argument("--reset-state", action="store_true", help="ignore the existing state file")
    return parser.parse_args(argv)


def build_relayer(cfg: RelayerConfig) -> Relayer:
    """
    Resolve ABIs, build pools and directions, load state.

    Everything that can fail on configuration happens here, before any
    network call and before the state file is touched.

    Raises:
        ConfigError: unusable ABI, forced name missing, bad key
    """
    source_pool = EndpointPool.from_urls(cfg.source.name, cfg.source.rpc_urls, cfg.source.chain_id, cfg.rpc_timeout)
    target_pool = EndpointPool.from_urls(cfg.target.name, cfg.target.rpc_urls, cfg.target.chain_id, cfg.rpc_timeout)

    directions: Dict[str, DirectionRuntime] = {}
    try:
        source_functions, source_events = parse_abi(load_abi(cfg.source_abi_path))
        target_functions, target_events = parse_abi(load_abi(cfg.target_abi_path))

        if cfg.runs_forward:
            lock_event = pick_event(source_events, FORWARD_EVENT, cfg.lock_event)
            mint_functions = resolve_functions(target_functions, FORWARD_FUNCTION, cfg.mint_function)
            directions["forward"] = DirectionRuntime(
                name="forward",
                label="mint",
                scanner=EventScanner(
                    source_pool, "forward", cfg.source_bridge, lock_event,
                    cfg.source.confirmations, cfg.source.max_range,
                ),
                guard=IdempotencyGuard(target_pool, cfg.target_bridge, find_processed_view(target_functions)),
                executor=TransactionExecutor(
                    target_pool, "mint", cfg.target_bridge, mint_functions, cfg.mint_gas_limit,
                    cfg.private_key, cfg.source.chain_id, cfg.target.chain_id,
                    dry_run=cfg.dry_run,
                    attempts=cfg.tx_attempts,
                    retry_delay_ms=cfg.tx_retry_delay_ms,
                    receipt_timeout=cfg.receipt_timeout,
                    max_fee_per_gas=cfg.max_fee_per_gas,
                    max_priority_fee=cfg.max_priority_fee,
                    fallthrough=cfg.simulation_fallthrough and not cfg.mint_function,
                ),
            )
            logger.info(f"[forward] event          : {lock_event.signature}")
            logger.info(f"[forward] mint function  : {mint_functions[0].signature}")

        if cfg.runs_reverse:
            return_event = pick_event(target_events, REVERSE_EVENT, cfg.return_event)
            unlock_functions = resolve_functions(source_functions, REVERSE_FUNCTION, cfg.unlock_function)
            directions["reverse"] = DirectionRuntime(
                name="reverse",
                label="unlock",
                scanner=EventScanner(
                    target_pool, "reverse", cfg.target_bridge, return_event,
                    cfg.target.confirmations, cfg.target.max_range,
                ),
                guard=IdempotencyGuard(source_pool, cfg.source_bridge, find_processed_view(source_functions)),
                executor=TransactionExecutor(
                    source_pool, "unlock", cfg.source_bridge, unlock_functions, cfg.unlock_gas_limit,
                    # reverse relays target -> source
                    cfg.private_key, cfg.target.chain_id, cfg.source.chain_id,
                    dry_run=cfg.dry_run,
                    attempts=cfg.tx_attempts,
                    retry_delay_ms=cfg.tx_retry_delay_ms,
                    receipt_timeout=cfg.receipt_timeout,
                    max_fee_per_gas=cfg.max_fee_per_gas,
                    max_priority_fee=cfg.max_priority_fee,
                    fallthrough=cfg.simulation_fallthrough and not cfg.unlock_function,
                ),
            )
            logger.info(f"[reverse] event          : {return_event.signature}")
            logger.info(f"[reverse] unlock function: {unlock_functions[0].signature}")
    except ValueError as e:
        # malformed ABI JSON, Account.from_key or checksum failures
        raise ConfigError(str(e)) from e

    store = StateStore(
        cfg.state_file,
        cfg.source.chain_id,
        cfg.target.chain_id,
        forward_from_block=cfg.source.from_block,
        reverse_from_block=cfg.target.from_block,
    )
    state = store.load(reset=cfg.reset_state)
    logger.info(f"[state] file={cfg.state_file}")
    logger.info(f"[state] forward.nextBlock={state.forward.cursor.next_block or '(auto)'}")
    logger.info(f"[state] reverse.nextBlock={state.reverse.cursor.next_block or '(auto)'}")

    return Relayer(
        store=store,
        state=state,
        directions=directions,
        pools={cfg.source.name: source_pool, cfg.target.name: target_pool},
        poll_interval_ms=cfg.poll_interval_ms,
        mode=cfg.mode,
        contracts=cfg.public_view(),
        dry_run=cfg.dry_run,
    )


def _banner(cfg: RelayerConfig) -> None:
    logger.info("==================================================")
    logger.info("=== Bridge Relayer Service =======================")
    logger.info("==================================================")
    logger.info(f"Version       : {VERSION}")
    logger.info(f"Mode          : {cfg.mode}")
    logger.info(f"Dry run       : {cfg.dry_run}")
    logger.info(f"Health port   : {cfg.health_port or 'disabled'}")
    logger.info(f"Source        : {cfg.source.name} ({cfg.source.chain_id}) {cfg.source_bridge}")
    logger.info(f"Target        : {cfg.target.name} ({cfg.target.chain_id}) {cfg.target_bridge}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    cfg = RelayerConfig.from_env()
    if args.dry_run:
        cfg.dry_run = True
    if args.reset_state:
        cfg.reset_state = True
    if args.catch_up:
        cfg.catch_up = True
    if args.catch_up_blocks is not None:
        cfg.catch_up_blocks = args.catch_up_blocks

    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s [RELAYER] %(levelname)s %(message)s",
    )

    try:
        cfg.validate()
        _banner(cfg)
        relayer = build_relayer(cfg)
    except ConfigError as e:
        logger.error(f"[Fatal] configuration error: {e}")
        return 1

    try:
        if cfg.health_port:
            health = HealthServer(build_app(relayer.public_status, relayer.store.snapshot), cfg.health_host, cfg.health_port)
            health.start()
            relayer.health = health
        relayer.setup_signal_handlers()
    except Exception as e:
        logger.exception(f"[Fatal] startup failed: {e}")
        return 1

    relayer.run(catch_up_blocks=cfg.catch_up_blocks if cfg.catch_up else 0, once=args.once)
    return 0


if __name__ == "__main__":
    sys.exit(main())
