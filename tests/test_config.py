import pytest

from relayer.config import RelayerConfig, collect_rpc_urls, is_placeholder_url, normalize_private_key
from relayer.errors import ConfigError

from ._relayer_fakes import ABI_DIR, SOURCE_BRIDGE, TARGET_BRIDGE

_VARS = (
    "SOURCE_RPC_URLS", "TARGET_RPC_URLS",
    "SEPOLIA_RPC_URL", "SEPOLIA_RPC_URL_1", "SEPOLIA_RPC_URL_2", "SEPOLIA_RPC_URL_3",
    "AMOY_RPC_URL", "AMOY_RPC_URL_1", "AMOY_RPC_URL_2", "AMOY_RPC_URL_3",
    "PRIVATE_KEY", "DEPLOYER_PRIVATE_KEY",
    "SOURCE_BRIDGE_ADDRESS", "SEPOLIA_SOURCE_BRIDGE_V2", "SEPOLIA_SOURCE_BRIDGE",
    "SOURCE_BRIDGE_SEPOLIA", "SEPOLIA_BRIDGE_ADDRESS",
    "TARGET_BRIDGE_ADDRESS", "AMOY_TARGET_BRIDGE_V2", "TARGET_BRIDGE_AMOY", "AMOY_BRIDGE_ADDRESS",
    "RELAYER_MODE", "RELAYER_DRY_RUN", "SOURCE_LOG_MAX_RANGE", "TARGET_LOG_MAX_RANGE",
    "HEALTH_PORT", "RELAYER_POLL_INTERVAL_MS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SOURCE_BRIDGE_ABI", str(ABI_DIR / "SourceBridge.json"))
    monkeypatch.setenv("TARGET_BRIDGE_ABI", str(ABI_DIR / "TargetBridge.json"))
    return monkeypatch


@pytest.fixture
def full_env(clean_env):
    clean_env.setenv("SOURCE_RPC_URLS", "https://sepolia-a.test, https://sepolia-b.test")
    clean_env.setenv("AMOY_RPC_URL", "https://amoy.test")
    clean_env.setenv("PRIVATE_KEY", "11" * 32)
    clean_env.setenv("SOURCE_BRIDGE_ADDRESS", SOURCE_BRIDGE)
    clean_env.setenv("TARGET_BRIDGE_ADDRESS", TARGET_BRIDGE)
    return clean_env


def test_defaults(full_env):
    cfg = RelayerConfig.from_env()
    cfg.validate()

    assert cfg.mode == "bidir"
    assert cfg.source.chain_id == 11155111
    assert cfg.target.chain_id == 80002
    assert cfg.source.max_range == 10
    assert cfg.target.max_range == 2000
    assert cfg.poll_interval_ms == 5000
    assert cfg.health_port == 8081
    assert cfg.runs_forward and cfg.runs_reverse


def test_rpc_urls_keep_priority_and_drop_placeholders(clean_env):
    clean_env.setenv("SOURCE_RPC_URLS", "https://primary.test,https://eth-sepolia.g.alchemy.com/v2/")
    clean_env.setenv("SEPOLIA_RPC_URL", "https://backup.test")
    clean_env.setenv("SEPOLIA_RPC_URL_1", "https://primary.test")
    clean_env.setenv("SEPOLIA_RPC_URL_2", "https://eth-sepolia.g.alchemy.com/v2/your_alchemy_key")

    assert collect_rpc_urls("SOURCE_RPC_URLS", "SEPOLIA") == ["https://primary.test", "https://backup.test"]


def test_private_key_gets_prefix(full_env):
    assert RelayerConfig.from_env().private_key == "0x" + "11" * 32
    assert normalize_private_key(" 0xabc ") == "0xabc"
    assert normalize_private_key("") == ""


def test_legacy_address_aliases(full_env):
    full_env.delenv("SOURCE_BRIDGE_ADDRESS")
    full_env.setenv("SEPOLIA_SOURCE_BRIDGE_V2", SOURCE_BRIDGE)

    assert RelayerConfig.from_env().source_bridge == SOURCE_BRIDGE


def test_validate_reports_every_problem(clean_env):
    clean_env.setenv("RELAYER_MODE", "sideways")
    clean_env.setenv("TARGET_BRIDGE_ADDRESS", "0x1234")

    with pytest.raises(ConfigError) as exc:
        RelayerConfig.from_env().validate()

    message = str(exc.value)
    assert "no RPC URLs for sepolia" in message
    assert "PRIVATE_KEY" in message
    assert "missing SOURCE_BRIDGE_ADDRESS" in message
    assert "not a valid address" in message
    assert "RELAYER_MODE" in message


def test_missing_abi_file_is_fatal(full_env, tmp_path):
    full_env.setenv("SOURCE_BRIDGE_ABI", str(tmp_path / "missing.json"))
    with pytest.raises(ConfigError, match="ABI file not found"):
        RelayerConfig.from_env().validate()


def test_single_direction_modes(full_env):
    full_env.setenv("RELAYER_MODE", "return")
    cfg = RelayerConfig.from_env()

    assert not cfg.runs_forward
    assert cfg.runs_reverse


def test_placeholder_detection():
    assert is_placeholder_url("")
    assert is_placeholder_url("https://polygon-amoy.g.alchemy.com/v2/")
    assert not is_placeholder_url("https://rpc-amoy.polygon.technology")
