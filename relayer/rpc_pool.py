"""Ordered multi-endpoint RPC pool with permanent eviction on chain mismatch."""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.middleware import ExtraDataToPOAMiddleware

from relayer.errors import AllEndpointsFailed, ChainIdMismatch, NoEndpointsAvailable

logger = logging.getLogger(__name__)

# Substrings that mean the endpoint is serving another chain.
IDENTITY_MISMATCH_MARKERS = (
    "network changed",
    "wrong network",
    "chain id mismatch",
    "unexpected chain id",
    "wrong chain id",
)


def is_identity_mismatch(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in IDENTITY_MISMATCH_MARKERS)


def redact_url(url: str) -> str:
    """Keep scheme and host only; RPC paths often embed API keys."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "<invalid url>"
    if not parsed.scheme or not parsed.netloc:
        return "<redacted>"
    return f"{parsed.scheme}://{parsed.hostname}"


def make_web3(url: str, timeout: int = 30) -> Web3:
    w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout}))
    # Polygon-family chains carry oversized extraData
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


@dataclass
class Endpoint:
    url: str
    expected_chain_id: int
    index: int
    w3: Any
    alive: bool = True
    verified: bool = False
    evicted_reason: Optional[str] = None


Operation = Callable[[Any, int], Any]


class EndpointPool:
    """
    Per-chain list of RPC endpoints tried in priority order.

    ``try_call`` runs ``operation(w3, index)`` on the first endpoint that
    succeeds. Endpoints found serving the wrong chain are evicted for the
    lifetime of the process; anything else is treated as transient.
    """

    def __init__(self, label: str, endpoints: List[Endpoint]):
        self.label = label
        self.endpoints = endpoints

    @classmethod
    def from_urls(cls, label: str, urls: List[str], expected_chain_id: int, timeout: int = 30) -> "EndpointPool":
        endpoints = [
            Endpoint(url=url, expected_chain_id=expected_chain_id, index=i, w3=make_web3(url, timeout))
            for i, url in enumerate(urls)
        ]
        return cls(label, endpoints)

    @property
    def alive(self) -> List[Endpoint]:
        return [e for e in self.endpoints if e.alive]

    def evict(self, index: int, reason: str) -> None:
        endpoint = self.endpoints[index]
        if not endpoint.alive:
            return
        endpoint.alive = False
        endpoint.evicted_reason = reason
        logger.warning(f"[rpc-skip][{self.label}] removing endpoint #{index} ({redact_url(endpoint.url)}): {reason}")

    def _verify_identity(self, endpoint: Endpoint) -> None:
        if endpoint.verified:
            return
        actual = int(endpoint.w3.eth.chain_id)
        if actual != endpoint.expected_chain_id:
            raise ChainIdMismatch(endpoint.url, endpoint.expected_chain_id, actual)
        endpoint.verified = True

    def try_call(self, operation: Operation, what: str = "call") -> Tuple[Any, int]:
        """
        Run ``operation`` against the pool.

        Returns:
            Tuple of (result, endpoint index)

        Raises:
            NoEndpointsAvailable: every endpoint has been evicted
            AllEndpointsFailed: every remaining endpoint failed this call
            ContractLogicError: the call reverted; not an endpoint fault
        """
        if not self.alive:
            raise NoEndpointsAvailable(self.label)

        last_error: Optional[str] = None
        for endpoint in self.endpoints:
            if not endpoint.alive:
                continue
            try:
                self._verify_identity(endpoint)
                return operation(endpoint.w3, endpoint.index), endpoint.index
            except ContractLogicError:
                raise
            except ChainIdMismatch as e:
                last_error = str(e)
                self.evict(endpoint.index, last_error)
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                if is_identity_mismatch(last_error):
                    self.evict(endpoint.index, last_error)
                else:
                    logger.debug(f"[rpc][{self.label}] {what} failed on endpoint #{endpoint.index}: {last_error}")

        if not self.alive:
            raise NoEndpointsAvailable(self.label)
        raise AllEndpointsFailed(f"{self.label} {what}", last_error)

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {
                "index": e.index,
                "host": redact_url(e.url),
                "alive": e.alive,
                "verified": e.verified,
                "evictedReason": e.evicted_reason,
            }
            for e in self.endpoints
        ]
