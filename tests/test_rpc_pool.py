import pytest
from web3.exceptions import ContractLogicError

from relayer.errors import AllEndpointsFailed, NoEndpointsAvailable
from relayer.rpc_pool import is_identity_mismatch, redact_url

from ._relayer_fakes import SOURCE_CHAIN_ID, FakeWeb3, make_pool


def test_wrong_chain_endpoint_is_evicted_and_next_one_serves():
    wrong = FakeWeb3(chain_id=1, block_number=999)
    right = FakeWeb3(chain_id=SOURCE_CHAIN_ID, block_number=120)
    pool = make_pool("sepolia", wrong, right, chain_id=SOURCE_CHAIN_ID)

    result, index = pool.try_call(lambda w3, i: w3.eth.block_number)

    assert (result, index) == (120, 1)
    assert pool.endpoints[0].alive is False
    assert "wrong network" in pool.endpoints[0].evicted_reason

    # evicted endpoints are never retried
    result, index = pool.try_call(lambda w3, i: w3.eth.block_number)
    assert index == 1
    assert wrong.eth.chain_id_calls == 1


def test_chain_id_is_probed_once_per_endpoint():
    w3 = FakeWeb3(chain_id=SOURCE_CHAIN_ID, block_number=5)
    pool = make_pool("sepolia", w3, chain_id=SOURCE_CHAIN_ID)

    for _ in range(3):
        pool.try_call(lambda w3, i: w3.eth.block_number)

    assert w3.eth.chain_id_calls == 1
    assert pool.endpoints[0].verified


def test_transient_failure_falls_through_without_eviction():
    flaky = FakeWeb3(chain_id=SOURCE_CHAIN_ID)
    flaky.eth.fail_with = TimeoutError("read timed out")
    good = FakeWeb3(chain_id=SOURCE_CHAIN_ID)
    pool = make_pool("sepolia", flaky, good, chain_id=SOURCE_CHAIN_ID)
    log_filter = {"fromBlock": 0, "toBlock": 10}

    logs, index = pool.try_call(lambda w3, i: w3.eth.get_logs(log_filter))

    assert logs == []
    assert index == 1
    assert pool.endpoints[0].alive


def test_mismatch_message_from_operation_evicts():
    w3 = FakeWeb3(chain_id=SOURCE_CHAIN_ID)
    w3.eth.fail_with = RuntimeError("underlying network changed")
    pool = make_pool("sepolia", w3, chain_id=SOURCE_CHAIN_ID)

    with pytest.raises(NoEndpointsAvailable):
        pool.try_call(lambda w3, i: w3.eth.get_logs({"fromBlock": 0, "toBlock": 0}))
    assert not pool.endpoints[0].alive


def test_all_endpoints_failing_raises_with_last_error():
    a = FakeWeb3(chain_id=SOURCE_CHAIN_ID)
    b = FakeWeb3(chain_id=SOURCE_CHAIN_ID)
    a.eth.fail_with = ConnectionError("refused")
    b.eth.fail_with = ConnectionError("reset by peer")
    pool = make_pool("sepolia", a, b, chain_id=SOURCE_CHAIN_ID)

    with pytest.raises(AllEndpointsFailed) as exc:
        pool.try_call(lambda w3, i: w3.eth.get_logs({"fromBlock": 0, "toBlock": 0}), "eth_getLogs")

    assert "reset by peer" in str(exc.value)
    assert all(e.alive for e in pool.endpoints)


def test_empty_pool_raises_no_endpoints():
    pool = make_pool("amoy", chain_id=SOURCE_CHAIN_ID)
    with pytest.raises(NoEndpointsAvailable):
        pool.try_call(lambda w3, i: None)


def test_contract_revert_is_not_an_endpoint_fault():
    first = FakeWeb3(chain_id=SOURCE_CHAIN_ID)
    second = FakeWeb3(chain_id=SOURCE_CHAIN_ID)
    pool = make_pool("sepolia", first, second, chain_id=SOURCE_CHAIN_ID)
    seen = []

    def reverting(w3, i):
        seen.append(i)
        raise ContractLogicError("execution reverted: already processed")

    with pytest.raises(ContractLogicError):
        pool.try_call(reverting)

    assert seen == [0]
    assert all(e.alive for e in pool.endpoints)


def test_identity_markers_and_redaction():
    assert is_identity_mismatch("Wrong Network detected")
    assert not is_identity_mismatch("execution reverted")
    assert redact_url("https://eth-sepolia.g.alchemy.com/v2/secretkey") == "https://eth-sepolia.g.alchemy.com"
    assert redact_url("not a url") == "<redacted>"


def test_describe_hides_paths():
    pool = make_pool("sepolia", FakeWeb3(chain_id=1), chain_id=SOURCE_CHAIN_ID)
    with pytest.raises(NoEndpointsAvailable):
        pool.try_call(lambda w3, i: None)

    [entry] = pool.describe()
    assert entry["host"] == "https://rpc0.sepolia.test"
    assert entry["alive"] is False
    assert "key0" not in str(entry)
