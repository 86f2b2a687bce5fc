"""Catch-up backfill over a lookback window before regular polling."""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def run_catch_up(relayer, blocks_back: int, start_block: Optional[int] = None) -> None:
    """
    Re-scan recent history for every enabled direction.

    Args:
        relayer: Relayer whose directions and state are used
        blocks_back: lookback window below the current safe head
        start_block: explicit first block (None = safe head - blocks_back, or
            the persisted cursor when that is further behind)

    Windows are fetched ``max_range`` blocks at a time and each is pushed
    through the normal guard/executor path, so already relayed nonces are
    skipped. Cursors only ever move forward; state is saved after every
    window. A failing direction is logged and left for regular polling.
    """
    for name in relayer.enabled:
        runtime = relayer.directions[name]
        scanner = runtime.scanner
        cursor = relayer.state.direction(name).cursor

        try:
            safe_head = scanner.safe_head()
            start = start_block if start_block is not None else max(safe_head - blocks_back, 0)
            if start_block is None and 0 < cursor.next_block < start:
                # blocks between the cursor and the lookback window are scanned too
                logger.info(f"[catch-up][{name}] cursor {cursor.next_block} is behind the lookback window, starting there")
                start = cursor.next_block
            total_blocks = safe_head - start + 1
            if total_blocks <= 0:
                logger.info(f"[catch-up][{name}] nothing to scan (start={start}, safe={safe_head})")
                continue

            logger.info(f"[catch-up][{name}] blocks {start} → {safe_head} ({total_blocks} blocks)")
            found = 0
            for b_start in range(start, safe_head + 1, scanner.max_range):
                if not relayer.running:
                    logger.info(f"[catch-up][{name}] interrupted at block {b_start}")
                    return
                b_end = min(b_start + scanner.max_range - 1, safe_head)
                result = scanner.fetch(b_start, b_end)
                found += len(result.events)
                relayer.process_window(name, result)
                cursor.last_seen_block = max(cursor.last_seen_block, b_end)
                cursor.advance_to(b_end + 1)
                relayer.store.save(relayer.state)

            logger.info(f"[catch-up][{name}] complete: events={found}, nextBlock={cursor.next_block}")
        except Exception as e:
            relayer.record_error(f"catch-up {name}", e)
