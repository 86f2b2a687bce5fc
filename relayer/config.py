"""Configuration for the relayer service."""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional
from dotenv import load_dotenv
from eth_utils import is_address

from relayer.errors import ConfigError

load_dotenv()

VERSION: str = "2.1.0"
STATE_SCHEMA_VERSION: int = 2

DEFAULT_STATE_FILE: str = os.path.join("data", "relayer_state_bidir.json")
DEFAULT_HEALTH_PORT: int = 8081
DEFAULT_CATCHUP_BLOCKS: int = 5000

MODES = ("bidir", "forward", "return")

_TRUE_VALUES = ("1", "true", "yes", "y", "on")
_PLACEHOLDER_MARKERS = ("your_alchemy_key", "your_", "example")


def env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def env_int(name: str, default: int) -> int:
    value = env(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool = False) -> bool:
    value = env(name).lower()
    if not value:
        return default
    return value in _TRUE_VALUES


def pick_env(*names: str) -> str:
    """Return the first non-empty variable among ``names``."""
    for name in names:
        value = env(name)
        if value:
            return value
    return ""


def is_placeholder_url(url: str) -> bool:
    if not url:
        return True
    lowered = url.lower()
    return any(marker in lowered for marker in _PLACEHOLDER_MARKERS) or lowered.endswith("/v2/")


def collect_rpc_urls(list_var: str, prefix: str) -> List[str]:
    """
    Collect RPC endpoints for one chain, highest priority first.

    ``list_var`` holds a comma separated list; ``<PREFIX>_RPC_URL`` and
    ``<PREFIX>_RPC_URL_1..3`` are appended after it. Placeholders and
    duplicates are dropped.
    """
    raw: List[str] = [u.strip() for u in env(list_var).split(",") if u.strip()]
    for suffix in ("", "_1", "_2", "_3"):
        value = env(f"{prefix}_RPC_URL{suffix}")
        if value:
            raw.append(value)

    urls: List[str] = []
    for url in raw:
        if is_placeholder_url(url) or url in urls:
            continue
        urls.append(url)
    return urls


def normalize_private_key(pk: str) -> str:
    if not pk:
        return ""
    pk = pk.strip()
    return pk if pk.startswith("0x") else "0x" + pk


@dataclass
class ChainSettings:
    name: str
    chain_id: int
    rpc_urls: List[str]
    max_range: int
    confirmations: int
    from_block: int = 0


@dataclass
class RelayerConfig:
    source: ChainSettings
    target: ChainSettings
    private_key: str
    source_bridge: str
    target_bridge: str
    source_abi_path: str = os.path.join("abi", "SourceBridge.json")
    target_abi_path: str = os.path.join("abi", "TargetBridge.json")
    mode: str = "bidir"
    poll_interval_ms: int = 5000
    mint_gas_limit: int = 300_000
    unlock_gas_limit: int = 300_000
    max_fee_per_gas: int = 0
    max_priority_fee: int = 0
    tx_attempts: int = 3
    tx_retry_delay_ms: int = 3000
    receipt_timeout: int = 120
    dry_run: bool = False
    mint_function: str = ""
    unlock_function: str = ""
    lock_event: str = ""
    return_event: str = ""
    simulation_fallthrough: bool = False
    state_file: str = DEFAULT_STATE_FILE
    reset_state: bool = False
    catch_up: bool = False
    catch_up_blocks: int = DEFAULT_CATCHUP_BLOCKS
    health_host: str = "127.0.0.1"
    health_port: int = DEFAULT_HEALTH_PORT
    rpc_timeout: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        source_name = env("SOURCE_CHAIN_NAME", "sepolia")
        target_name = env("TARGET_CHAIN_NAME", "amoy")

        source = ChainSettings(
            name=source_name,
            chain_id=env_int("SOURCE_CHAIN_ID", 11155111),
            rpc_urls=collect_rpc_urls("SOURCE_RPC_URLS", source_name.upper()),
            max_range=env_int("SOURCE_LOG_MAX_RANGE", env_int(f"{source_name.upper()}_LOG_MAX_RANGE", 10)),
            confirmations=env_int("RELAYER_CONFIRMATIONS_SOURCE", env_int(f"RELAYER_CONFIRMATIONS_{source_name.upper()}", 2)),
            from_block=env_int("RELAYER_FROM_BLOCK_SOURCE", env_int(f"RELAYER_FROM_BLOCK_{source_name.upper()}", 0)),
        )
        target = ChainSettings(
            name=target_name,
            chain_id=env_int("TARGET_CHAIN_ID", 80002),
            rpc_urls=collect_rpc_urls("TARGET_RPC_URLS", target_name.upper()),
            max_range=env_int("TARGET_LOG_MAX_RANGE", env_int(f"{target_name.upper()}_LOG_MAX_RANGE", 2000)),
            confirmations=env_int("RELAYER_CONFIRMATIONS_TARGET", env_int(f"RELAYER_CONFIRMATIONS_{target_name.upper()}", 2)),
            from_block=env_int("RELAYER_FROM_BLOCK_TARGET", env_int(f"RELAYER_FROM_BLOCK_{target_name.upper()}", 0)),
        )

        return cls(
            source=source,
            target=target,
            private_key=normalize_private_key(pick_env("PRIVATE_KEY", "DEPLOYER_PRIVATE_KEY")),
            source_bridge=pick_env(
                "SOURCE_BRIDGE_ADDRESS",
                "SEPOLIA_SOURCE_BRIDGE_V2",
                "SEPOLIA_SOURCE_BRIDGE",
                "SOURCE_BRIDGE_SEPOLIA",
                "SEPOLIA_BRIDGE_ADDRESS",
            ),
            target_bridge=pick_env(
                "TARGET_BRIDGE_ADDRESS",
                "AMOY_TARGET_BRIDGE_V2",
                "TARGET_BRIDGE_AMOY",
                "AMOY_BRIDGE_ADDRESS",
            ),
            source_abi_path=env("SOURCE_BRIDGE_ABI", os.path.join("abi", "SourceBridge.json")),
            target_abi_path=env("TARGET_BRIDGE_ABI", os.path.join("abi", "TargetBridge.json")),
            mode=env("RELAYER_MODE", "bidir").lower(),
            poll_interval_ms=env_int("RELAYER_POLL_INTERVAL_MS", 5000),
            mint_gas_limit=env_int("RELAYER_MINT_GAS_LIMIT", 300_000),
            unlock_gas_limit=env_int("RELAYER_UNLOCK_GAS_LIMIT", 300_000),
            max_fee_per_gas=env_int("MAX_FEE_PER_GAS", 0),
            max_priority_fee=env_int("MAX_PRIORITY_FEE", 0),
            tx_attempts=env_int("RELAYER_TX_ATTEMPTS", 3),
            tx_retry_delay_ms=env_int("RELAYER_TX_RETRY_DELAY_MS", 3000),
            receipt_timeout=env_int("RELAYER_RECEIPT_TIMEOUT", 120),
            dry_run=env_bool("RELAYER_DRY_RUN"),
            mint_function=env("RELAYER_MINT_FUNCTION"),
            unlock_function=env("RELAYER_UNLOCK_FUNCTION"),
            lock_event=env("RELAYER_LOCK_EVENT"),
            return_event=env("RELAYER_RETURN_EVENT"),
            simulation_fallthrough=env_bool("RELAYER_SIMULATION_FALLTHROUGH"),
            state_file=env("RELAYER_STATE_FILE", DEFAULT_STATE_FILE),
            reset_state=env_bool("RELAYER_RESET_STATE"),
            catch_up=env_bool("RELAYER_CATCHUP"),
            catch_up_blocks=env_int("RELAYER_CATCHUP_BLOCKS", DEFAULT_CATCHUP_BLOCKS),
            health_host=env("HEALTH_HOST", "127.0.0.1"),
            health_port=env_int("HEALTH_PORT", DEFAULT_HEALTH_PORT),
            rpc_timeout=env_int("RPC_TIMEOUT", 30),
            log_level=env("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        """Raise ConfigError listing every problem found."""
        problems: List[str] = []
        if not self.source.rpc_urls:
            problems.append(f"no RPC URLs for {self.source.name} (SOURCE_RPC_URLS or {self.source.name.upper()}_RPC_URL)")
        if not self.target.rpc_urls:
            problems.append(f"no RPC URLs for {self.target.name} (TARGET_RPC_URLS or {self.target.name.upper()}_RPC_URL)")
        if not self.private_key or self.private_key == "0x":
            problems.append("missing PRIVATE_KEY (or DEPLOYER_PRIVATE_KEY)")
        if not self.source_bridge:
            problems.append("missing SOURCE_BRIDGE_ADDRESS")
        if not self.target_bridge:
            problems.append("missing TARGET_BRIDGE_ADDRESS")
        for label, address in (("SOURCE_BRIDGE_ADDRESS", self.source_bridge), ("TARGET_BRIDGE_ADDRESS", self.target_bridge)):
            if address and not is_address(address):
                problems.append(f"{label} is not a valid address: {address}")
        if self.mode not in MODES:
            problems.append(f"RELAYER_MODE must be one of {', '.join(MODES)}, got {self.mode!r}")
        for chain in (self.source, self.target):
            if chain.max_range < 1:
                problems.append(f"{chain.name} log max range must be >= 1")
            if chain.confirmations < 0:
                problems.append(f"{chain.name} confirmations must be >= 0")
        if self.tx_attempts < 1:
            problems.append("RELAYER_TX_ATTEMPTS must be >= 1")
        for path in (self.source_abi_path, self.target_abi_path):
            if not Path(path).exists():
                problems.append(f"ABI file not found: {path}")
        if problems:
            raise ConfigError("; ".join(problems))

    @property
    def runs_forward(self) -> bool:
        return self.mode in ("bidir", "forward")

    @property
    def runs_reverse(self) -> bool:
        return self.mode in ("bidir", "return")

    def public_view(self) -> Dict[str, Optional[str]]:
        return {
            "sourceBridge": self.source_bridge,
            "targetBridge": self.target_bridge,
        }
