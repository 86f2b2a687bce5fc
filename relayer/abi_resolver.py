"""
Heuristic selection of bridge functions and events from a contract ABI.

Deployments name their entry points differently (``mintFromSource``,
``releaseTokens``, ``finalizeBridge``...), so the relayer ranks the ABI
entries against a role profile instead of hardcoding names. Everything here
is pure: no network, no Web3 instance.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

from eth_utils import keccak, to_hex

from relayer.errors import ConfigError, UnsupportedParameter

logger = logging.getLogger(__name__)

ZERO_HASH = b"\x00" * 32

_INTEGER_TYPE = re.compile(r"^u?int\d*$")


@dataclass(frozen=True)
class AbiParam:
    name: str
    type: str
    indexed: bool = False
    components: Tuple["AbiParam", ...] = ()

    @property
    def is_address(self) -> bool:
        return self.type == "address"

    @property
    def is_integer(self) -> bool:
        return bool(_INTEGER_TYPE.match(self.type))

    @property
    def is_bytes_blob(self) -> bool:
        return self.type == "bytes"

    @property
    def canonical_type(self) -> str:
        if self.type.startswith("tuple"):
            inner = ",".join(c.canonical_type for c in self.components)
            return f"({inner}){self.type[len('tuple'):]}"
        return self.type


@dataclass(frozen=True)
class AbiFunction:
    name: str
    inputs: Tuple[AbiParam, ...]
    outputs: Tuple[AbiParam, ...] = ()
    state_mutability: str = "nonpayable"
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def is_read_only(self) -> bool:
        return self.state_mutability in ("view", "pure")

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.canonical_type for p in self.inputs)})"


@dataclass(frozen=True)
class AbiEvent:
    name: str
    inputs: Tuple[AbiParam, ...]
    anonymous: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.canonical_type for p in self.inputs)})"

    @property
    def topic(self) -> str:
        """keccak-256 of the canonical signature, 0x-prefixed."""
        return to_hex(keccak(text=self.signature))


@dataclass(frozen=True)
class EventProfile:
    intent: Pattern
    action: Pattern


@dataclass(frozen=True)
class FunctionProfile:
    intent: Pattern
    keyword: Pattern
    min_inputs: int


FORWARD_EVENT = EventProfile(
    intent=re.compile(r"^(?!.*unlock).*(lock|deposit|initiat|send)", re.I),
    action=re.compile(r"lock", re.I),
)
REVERSE_EVENT = EventProfile(
    intent=re.compile(r"return|burn|withdraw|redeem|unlock", re.I),
    action=re.compile(r"return|burn", re.I),
)
FORWARD_FUNCTION = FunctionProfile(
    intent=re.compile(r"mint|release|finalize|claim|bridge", re.I),
    keyword=re.compile(r"mint", re.I),
    min_inputs=3,
)
REVERSE_FUNCTION = FunctionProfile(
    intent=re.compile(r"unlock|release|finalize|withdraw|redeem", re.I),
    keyword=re.compile(r"unlock|release", re.I),
    min_inputs=2,
)

_PROCESSED_VIEW = re.compile(r"(processed|used|consumed|executed|claimed).*nonce|nonce.*(processed|used|consumed|executed)", re.I)


def _param(data: Dict[str, Any]) -> AbiParam:
    return AbiParam(
        name=data.get("name") or "",
        type=data.get("type", ""),
        indexed=bool(data.get("indexed", False)),
        components=tuple(_param(c) for c in data.get("components") or ()),
    )


def _mutability(data: Dict[str, Any]) -> str:
    if "stateMutability" in data:
        return data["stateMutability"]
    # pre-0.5 ABIs
    if data.get("constant"):
        return "view"
    return "payable" if data.get("payable") else "nonpayable"


def load_abi(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """Read a plain ABI list or a Hardhat/Foundry artifact with an ``abi`` key."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("abi")
    if not isinstance(data, list):
        raise ConfigError(f"{path}: not an ABI document")
    return data


def parse_abi(abi: List[Dict[str, Any]]) -> Tuple[List[AbiFunction], List[AbiEvent]]:
    functions: List[AbiFunction] = []
    events: List[AbiEvent] = []
    for entry in abi:
        kind = entry.get("type", "function")
        if kind == "function":
            functions.append(AbiFunction(
                name=entry.get("name", ""),
                inputs=tuple(_param(p) for p in entry.get("inputs") or ()),
                outputs=tuple(_param(p) for p in entry.get("outputs") or ()),
                state_mutability=_mutability(entry),
                raw=entry,
            ))
        elif kind == "event":
            events.append(AbiEvent(
                name=entry.get("name", ""),
                inputs=tuple(_param(p) for p in entry.get("inputs") or ()),
                anonymous=bool(entry.get("anonymous", False)),
                raw=entry,
            ))
    return functions, events


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def score_event(event: AbiEvent, profile: EventProfile) -> int:
    addresses = sum(1 for p in event.inputs if p.is_address)
    integers = sum(1 for p in event.inputs if p.is_integer)
    score = 0
    if addresses >= 1:
        score += 3
    if integers >= 2:
        score += 3
    if profile.action.search(event.name):
        score += 2
    return score


def rank_events(events: List[AbiEvent], profile: EventProfile) -> List[AbiEvent]:
    candidates = [e for e in events if not e.anonymous and profile.intent.search(e.name)]
    # sorted() is stable: ties keep declaration order
    return sorted(candidates, key=lambda e: score_event(e, profile), reverse=True)


def pick_event(events: List[AbiEvent], profile: EventProfile, forced: str = "") -> AbiEvent:
    if forced:
        for event in events:
            if event.name == forced:
                return event
        raise ConfigError(f'forced event "{forced}" not found in ABI')
    ranked = rank_events(events, profile)
    if not ranked:
        raise ConfigError(f"could not auto-detect an event matching {profile.intent.pattern}; set an override")
    return ranked[0]


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------

def score_function(function: AbiFunction, profile: FunctionProfile) -> int:
    has_address = any(p.is_address for p in function.inputs)
    integers = sum(1 for p in function.inputs if p.is_integer)
    score = 0
    if has_address:
        score += 2
    if integers >= 2:
        score += 2
    if profile.keyword.search(function.name):
        score += 2
    if any(p.is_bytes_blob for p in function.inputs):
        score -= 1
    return score


def rank_functions(functions: List[AbiFunction], profile: FunctionProfile) -> List[AbiFunction]:
    candidates = [
        f for f in functions
        if not f.is_read_only
        and profile.intent.search(f.name)
        and len(f.inputs) >= profile.min_inputs
    ]
    return sorted(candidates, key=lambda f: score_function(f, profile), reverse=True)


@dataclass(frozen=True)
class CallRoles:
    """Values the argument builder can place into a function's parameters."""
    recipient: str
    amount: int
    nonce: int
    source_chain_id: int
    destination_chain_id: int


def _role_for_extra_integer(name: str, roles: CallRoles) -> int:
    lowered = name.lower()
    if "src" in lowered or "source" in lowered or "from" in lowered:
        return roles.source_chain_id
    if "dst" in lowered or "target" in lowered or "to" in lowered or "chain" in lowered:
        return roles.destination_chain_id
    return 0


def build_call_args(function: AbiFunction, roles: CallRoles) -> List[Any]:
    """
    Map roles onto ``function``'s parameters in declared order.

    Raises:
        UnsupportedParameter: a parameter type has no role
    """
    args: List[Any] = []
    integers_used = 0
    for param in function.inputs:
        if param.is_address:
            args.append(roles.recipient)
        elif param.is_integer:
            if integers_used == 0:
                args.append(roles.amount)
            elif integers_used == 1:
                args.append(roles.nonce)
            else:
                args.append(_role_for_extra_integer(param.name, roles))
            integers_used += 1
        elif param.type == "bytes32":
            args.append(ZERO_HASH)
        elif param.type == "bytes":
            args.append(b"")
        elif param.type == "bool":
            args.append(True)
        else:
            raise UnsupportedParameter(function.name, param.type)
    return args


_PROBE_ROLES = CallRoles(
    recipient="0x" + "00" * 20,
    amount=1,
    nonce=1,
    source_chain_id=1,
    destination_chain_id=1,
)


def resolve_functions(
    functions: List[AbiFunction],
    profile: FunctionProfile,
    forced: str = "",
) -> List[AbiFunction]:
    """
    Candidate functions to call, best first.

    A forced name yields exactly one candidate and must exist with buildable
    arguments. Otherwise candidates whose arguments cannot be built are
    dropped.

    Raises:
        ConfigError: nothing usable was found
    """
    if forced:
        for function in functions:
            if function.name == forced:
                try:
                    build_call_args(function, _PROBE_ROLES)
                except UnsupportedParameter as e:
                    raise ConfigError(f'forced function "{forced}": {e}') from e
                return [function]
        raise ConfigError(f'forced function "{forced}" not found in ABI')

    usable: List[AbiFunction] = []
    for function in rank_functions(functions, profile):
        try:
            build_call_args(function, _PROBE_ROLES)
        except UnsupportedParameter as e:
            logger.info(f"[abi] rejecting candidate {function.signature}: {e}")
            continue
        usable.append(function)
    if not usable:
        raise ConfigError(f"could not auto-detect a function matching {profile.intent.pattern}; set an override")
    return usable


def find_processed_view(functions: List[AbiFunction]) -> Optional[AbiFunction]:
    """Locate a ``processedNonces(uint256) -> bool`` style read, if any."""
    def fits(f: AbiFunction) -> bool:
        return (
            f.is_read_only
            and len(f.inputs) == 1
            and f.inputs[0].is_integer
            and len(f.outputs) == 1
            and f.outputs[0].type == "bool"
        )

    for f in functions:
        if f.name == "processedNonces" and fits(f):
            return f
    for f in functions:
        if _PROCESSED_VIEW.search(f.name) and fits(f):
            return f
    return None
