"""Crash-safe persistence of relayer cursors and skip caches."""
import copy
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from relayer.config import STATE_SCHEMA_VERSION

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ChainCursor:
    chain_id: int
    next_block: int = 0  # 0 = auto, resolved to the safe head on first tick
    last_seen_block: int = 0
    last_processed: Optional[Dict[str, Any]] = None

    def advance_to(self, block: int) -> None:
        """Move the cursor forward; never backwards."""
        if block > self.next_block:
            self.next_block = block

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "nextBlock": self.next_block,
            "lastSeenBlock": self.last_seen_block,
            "lastProcessed": self.last_processed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], chain_id: int) -> "ChainCursor":
        return cls(
            chain_id=int(data.get("chainId") or chain_id),
            next_block=int(data.get("nextBlock") or 0),
            last_seen_block=int(data.get("lastSeenBlock") or 0),
            last_processed=data.get("lastProcessed"),
        )


@dataclass
class DirectionState:
    cursor: ChainCursor
    skip: Dict[str, str] = field(default_factory=dict)

    def is_skipped(self, nonce: int) -> bool:
        return str(nonce) in self.skip

    def mark_skip(self, nonce: int, reason: str) -> None:
        # grow-only: the first recorded reason wins
        self.skip.setdefault(str(nonce), reason)

    def to_dict(self) -> Dict[str, Any]:
        data = self.cursor.to_dict()
        data["skip"] = dict(self.skip)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], chain_id: int) -> "DirectionState":
        skip = {str(k): str(v) for k, v in (data.get("skip") or {}).items()}
        return cls(cursor=ChainCursor.from_dict(data, chain_id), skip=skip)


@dataclass
class RelayerState:
    forward: DirectionState
    reverse: DirectionState
    schema_version: int = STATE_SCHEMA_VERSION
    updated_at: Optional[str] = None

    def direction(self, name: str) -> DirectionState:
        if name == "forward":
            return self.forward
        if name == "reverse":
            return self.reverse
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "updatedAt": self.updated_at,
            "forward": self.forward.to_dict(),
            "reverse": self.reverse.to_dict(),
        }


def default_state(
    source_chain_id: int,
    target_chain_id: int,
    forward_from_block: int = 0,
    reverse_from_block: int = 0,
) -> RelayerState:
    """Forward scans the source chain, reverse scans the target chain."""
    return RelayerState(
        forward=DirectionState(cursor=ChainCursor(chain_id=source_chain_id, next_block=max(forward_from_block, 0))),
        reverse=DirectionState(cursor=ChainCursor(chain_id=target_chain_id, next_block=max(reverse_from_block, 0))),
    )


def state_from_dict(data: Dict[str, Any], source_chain_id: int, target_chain_id: int) -> RelayerState:
    if "schemaVersion" not in data and "schema" in data:
        data = migrate_legacy(data)
    return RelayerState(
        forward=DirectionState.from_dict(data.get("forward") or {}, source_chain_id),
        reverse=DirectionState.from_dict(data.get("reverse") or {}, target_chain_id),
        schema_version=STATE_SCHEMA_VERSION,
        updated_at=data.get("updatedAt"),
    )


def migrate_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a schema-1 document keyed by chain name.

    Schema 1 stored ``sepolia``/``amoy`` cursors and a single
    ``skip.returnNonces`` map that only applied to the reverse direction.
    """
    forward = dict(data.get("sepolia") or {})
    reverse = dict(data.get("amoy") or {})
    reverse["skip"] = dict((data.get("skip") or {}).get("returnNonces") or {})
    logger.info("[state] migrating schema 1 state document")
    return {"updatedAt": data.get("updatedAt"), "forward": forward, "reverse": reverse}


class StateStore:
    """
    Load and atomically persist ``RelayerState`` as JSON.

    Saving writes ``<path>.tmp`` and renames it over ``path`` so the file on
    disk is always one complete document. The last persisted snapshot is kept
    for readers on other threads (the health server).
    """

    def __init__(
        self,
        path: str,
        source_chain_id: int,
        target_chain_id: int,
        forward_from_block: int = 0,
        reverse_from_block: int = 0,
    ):
        self.path = Path(path)
        self.source_chain_id = source_chain_id
        self.target_chain_id = target_chain_id
        self.forward_from_block = forward_from_block
        self.reverse_from_block = reverse_from_block
        self._snapshot: Dict[str, Any] = {}

    def _default(self) -> RelayerState:
        return default_state(
            self.source_chain_id,
            self.target_chain_id,
            self.forward_from_block,
            self.reverse_from_block,
        )

    def load(self, reset: bool = False) -> RelayerState:
        if reset:
            logger.info(f"[state] reset requested, ignoring {self.path}")
            state = self._default()
        elif not self.path.exists():
            state = self._default()
        else:
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    state = state_from_dict(json.load(f), self.source_chain_id, self.target_chain_id)
            except (OSError, ValueError, TypeError) as e:
                logger.error(f"[state] unreadable state file {self.path}: {e}; starting from defaults")
                state = self._default()
        self._snapshot = copy.deepcopy(state.to_dict())
        return state

    def save(self, state: RelayerState) -> None:
        state.updated_at = now_iso()
        payload = state.to_dict()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

        self._snapshot = copy.deepcopy(payload)

    def snapshot(self) -> Dict[str, Any]:
        """Most recently persisted (or loaded) document."""
        return self._snapshot
