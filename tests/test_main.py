import pytest

from relayer.config import ChainSettings, RelayerConfig
from relayer.errors import ConfigError
from relayer.main import build_relayer, main, parse_args

from ._relayer_fakes import ABI_DIR, SOURCE_BRIDGE, SOURCE_CHAIN_ID, TARGET_BRIDGE, TARGET_CHAIN_ID, TEST_KEY


def _config(tmp_path, **overrides):
    cfg = RelayerConfig(
        source=ChainSettings("sepolia", SOURCE_CHAIN_ID, ["http://127.0.0.1:1"], max_range=10, confirmations=2),
        target=ChainSettings("amoy", TARGET_CHAIN_ID, ["http://127.0.0.1:2"], max_range=2000, confirmations=2),
        private_key=TEST_KEY,
        source_bridge=SOURCE_BRIDGE,
        target_bridge=TARGET_BRIDGE,
        source_abi_path=str(ABI_DIR / "SourceBridge.json"),
        target_abi_path=str(ABI_DIR / "TargetBridge.json"),
        state_file=str(tmp_path / "state.json"),
        health_port=0,
    )
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def test_build_relayer_wires_both_directions(tmp_path):
    relayer = build_relayer(_config(tmp_path))

    assert relayer.enabled == ["forward", "reverse"]
    forward = relayer.directions["forward"]
    reverse = relayer.directions["reverse"]
    assert forward.scanner.event.name == "Locked"
    assert forward.scanner.pool.label == "sepolia"
    assert forward.executor.functions[0].name == "mintFromSource"
    assert forward.executor.pool.label == "amoy"
    assert reverse.scanner.event.name == "BurnToSource"
    assert reverse.executor.functions[0].name == "unlockFromTarget"
    assert (reverse.executor.source_chain_id, reverse.executor.destination_chain_id) == (TARGET_CHAIN_ID, SOURCE_CHAIN_ID)
    assert reverse.guard.processed_view.name == "processedNonces"


def test_mode_limits_directions(tmp_path):
    relayer = build_relayer(_config(tmp_path, mode="forward"))
    assert relayer.enabled == ["forward"]


def test_forced_function_missing_fails_before_state_is_touched(tmp_path):
    with pytest.raises(ConfigError, match="mintTo"):
        build_relayer(_config(tmp_path, mint_function="mintTo"))
    assert not (tmp_path / "state.json").exists()


def test_malformed_abi_is_a_config_error(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ConfigError):
        build_relayer(_config(tmp_path, target_abi_path=str(broken)))


def test_main_exits_nonzero_on_config_error(monkeypatch, tmp_path):
    monkeypatch.setattr(RelayerConfig, "from_env", classmethod(lambda cls: _config(tmp_path, unlock_function="nope")))
    assert main(["--once"]) == 1


def test_cli_flags():
    args = parse_args(["--once", "--dry-run", "--catch-up", "--catch-up-blocks", "100", "--reset-state"])
    assert args.once and args.dry_run and args.catch_up and args.reset_state
    assert args.catch_up_blocks == 100
    assert parse_args([]).catch_up_blocks is None
