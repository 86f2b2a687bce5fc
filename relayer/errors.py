"""Exception hierarchy for the relayer."""
from typing import Optional


class RelayerError(Exception):
    """Base class for all relayer errors."""


class ConfigError(RelayerError):
    """Invalid or missing configuration. Fatal before the poll loop starts."""


class RpcError(RelayerError):
    """An RPC operation could not be completed on any endpoint."""


class AllEndpointsFailed(RpcError):
    def __init__(self, label: str, last_error: Optional[str] = None):
        self.label = label
        self.last_error = last_error
        super().__init__(f"{label}: all endpoints failed ({last_error or 'no error recorded'})")


class NoEndpointsAvailable(RpcError):
    def __init__(self, label: str):
        self.label = label
        super().__init__(f"{label}: no endpoints left in pool")


class ChainIdMismatch(RpcError):
    """Endpoint answered for a different chain than the one configured."""

    def __init__(self, url: str, expected: int, actual: int):
        self.url = url
        self.expected = expected
        self.actual = actual
        super().__init__(f"wrong network: expected chain id {expected}, got {actual}")


class AbiResolutionError(RelayerError):
    """No usable function or event could be picked from an ABI."""


class UnsupportedParameter(AbiResolutionError):
    def __init__(self, function_name: str, param_type: str):
        self.function_name = function_name
        self.param_type = param_type
        super().__init__(f"Unsupported param type in {function_name}: {param_type}")


class LogDecodeError(RelayerError):
    """A log could not be decoded against the expected event ABI."""
