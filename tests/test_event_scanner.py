import pytest
from eth_utils import to_checksum_address

from relayer.errors import LogDecodeError
from relayer.event_scanner import EventScanner, compute_scan_window, decode_log, extract_relay_fields
from relayer.state_store import ChainCursor

from ._relayer_fakes import ALICE, SOURCE_BRIDGE, SOURCE_CHAIN_ID, TARGET_CHAIN_ID, FakeWeb3, make_log, make_pool


def _scanner(event, w3, confirmations=2, max_range=10, direction="forward", chain_id=SOURCE_CHAIN_ID):
    pool = make_pool("sepolia", w3, chain_id=chain_id)
    return EventScanner(pool, direction, SOURCE_BRIDGE, event, confirmations, max_range)


def test_window_is_capped_by_max_range():
    assert compute_scan_window(100, 207, 2, 10) == (100, 109)


def test_window_never_passes_safe_head():
    assert compute_scan_window(200, 207, 2, 10) == (200, 205)
    assert compute_scan_window(206, 207, 2, 10) is None
    assert compute_scan_window(0, 1, 2, 10) is None


def test_chunked_scan_reaches_safe_head_over_several_ticks(locked_event):
    w3 = FakeWeb3(chain_id=SOURCE_CHAIN_ID, block_number=207)
    scanner = _scanner(locked_event, w3)
    cursor = ChainCursor(chain_id=SOURCE_CHAIN_ID, next_block=100)

    ticks = 0
    while True:
        result = scanner.scan(cursor)
        if result is None:
            break
        assert result.to_block <= 205
        assert result.to_block - result.from_block + 1 <= 10
        if ticks == 0:
            assert (result.from_block, result.to_block) == (100, 109)
        cursor.advance_to(result.to_block + 1)
        ticks += 1

    assert ticks == 11
    assert cursor.next_block == 206


def test_auto_cursor_starts_at_safe_head(locked_event):
    w3 = FakeWeb3(chain_id=SOURCE_CHAIN_ID, block_number=500)
    scanner = _scanner(locked_event, w3)
    cursor = ChainCursor(chain_id=SOURCE_CHAIN_ID)

    result = scanner.scan(cursor)

    assert cursor.next_block == 498
    assert (result.from_block, result.to_block) == (498, 498)


def test_scan_decodes_and_orders_events(locked_event):
    logs = [
        make_log(locked_event, {"user": ALICE, "amount": 300, "nonce": 3}, block_number=52, log_index=1),
        make_log(locked_event, {"user": ALICE, "amount": 100, "nonce": 1}, block_number=50),
        make_log(locked_event, {"user": ALICE, "amount": 200, "nonce": 2}, block_number=52, log_index=0),
    ]
    w3 = FakeWeb3(chain_id=SOURCE_CHAIN_ID, block_number=54, logs=logs)
    scanner = _scanner(locked_event, w3)

    result = scanner.scan(ChainCursor(chain_id=SOURCE_CHAIN_ID, next_block=50))

    assert [e.nonce for e in result.events] == [1, 2, 3]
    first = result.events[0]
    assert first.actor == to_checksum_address(ALICE)
    assert first.amount == 100
    assert first.block_number == 50
    assert first.source_tx.startswith("0x") and len(first.source_tx) == 66

    [call] = w3.eth.get_logs_calls
    assert call["topics"] == [locked_event.topic]
    assert call["address"] == to_checksum_address(SOURCE_BRIDGE)


def test_unconfirmed_log_is_not_returned_yet(locked_event):
    logs = [make_log(locked_event, {"user": ALICE, "amount": 1, "nonce": 9}, block_number=53)]
    w3 = FakeWeb3(chain_id=SOURCE_CHAIN_ID, block_number=54, logs=logs)
    scanner = _scanner(locked_event, w3)

    result = scanner.scan(ChainCursor(chain_id=SOURCE_CHAIN_ID, next_block=50))

    assert result.to_block == 52
    assert result.events == []


def test_undecodable_log_is_counted_and_skipped(locked_event):
    good = make_log(locked_event, {"user": ALICE, "amount": 5, "nonce": 1}, block_number=10)
    broken = make_log(locked_event, {"user": ALICE, "amount": 5, "nonce": 2}, block_number=11)
    broken["data"] = b"\x01\x02"
    w3 = FakeWeb3(chain_id=SOURCE_CHAIN_ID, block_number=20, logs=[good, broken])
    scanner = _scanner(locked_event, w3)

    result = scanner.fetch(10, 12)

    assert [e.nonce for e in result.events] == [1]
    assert result.undecodable == 1


def test_burn_event_uses_named_recipient_and_nonce(burn_event):
    bob = "0x" + "bb" * 20
    log = make_log(burn_event, {"from": ALICE, "to": bob, "amount": 600, "burnNonce": 4}, block_number=7)

    recipient, amount, nonce = extract_relay_fields(decode_log(burn_event, log))

    assert recipient == to_checksum_address(bob)
    assert (amount, nonce) == (600, 4)


def test_decode_rejects_foreign_topic(locked_event, burn_event):
    log = make_log(burn_event, {"from": ALICE, "to": ALICE, "amount": 1, "burnNonce": 1}, block_number=1)
    with pytest.raises(LogDecodeError):
        decode_log(locked_event, log)


def test_reverse_scanner_reads_target_chain(burn_event):
    log = make_log(burn_event, {"from": ALICE, "to": ALICE, "amount": 10, "burnNonce": 2}, block_number=3000)
    w3 = FakeWeb3(chain_id=TARGET_CHAIN_ID, block_number=3010, logs=[log])
    scanner = _scanner(burn_event, w3, max_range=2000, direction="reverse", chain_id=TARGET_CHAIN_ID)

    result = scanner.scan(ChainCursor(chain_id=TARGET_CHAIN_ID, next_block=2990))

    assert [(e.direction, e.nonce, e.amount) for e in result.events] == [("reverse", 2, 10)]
