import pytest

from relayer.abi_resolver import load_abi, parse_abi
from relayer.state_store import StateStore

from ._relayer_fakes import ABI_DIR, SOURCE_CHAIN_ID, TARGET_CHAIN_ID


@pytest.fixture
def source_abi():
    return parse_abi(load_abi(ABI_DIR / "SourceBridge.json"))


@pytest.fixture
def target_abi():
    return parse_abi(load_abi(ABI_DIR / "TargetBridge.json"))


@pytest.fixture
def locked_event(source_abi):
    _, events = source_abi
    return next(e for e in events if e.name == "Locked")


@pytest.fixture
def burn_event(target_abi):
    _, events = target_abi
    return next(e for e in events if e.name == "BurnToSource")


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state.json"), SOURCE_CHAIN_ID, TARGET_CHAIN_ID)
