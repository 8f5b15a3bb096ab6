"""
Errors - Exception hierarchy for the development session orchestrator
Fatal startup errors and per-request proxy errors share one base class
"""


class DevSessionError(Exception):
    """Base class for every error the orchestrator reports to the user"""


class PortExhausted(DevSessionError):
    """No free, unclaimed port could be found for a preference"""

    def __init__(self, preferred: int, attempts: int):
        super().__init__(f"No free port found starting from {preferred} after {attempts} attempts")
        self.preferred = preferred
        self.attempts = attempts


class SpawnFailure(DevSessionError):
    """A child service could not be started"""

    def __init__(self, kind: str, reason: str):
        super().__init__(f"Failed to start {kind}: {reason}")
        self.kind = kind
        self.reason = reason


class ReadinessTimeout(DevSessionError):
    """A child service never became ready within its timeout"""

    def __init__(self, target: str, timeout: float):
        super().__init__(f"Timeout waiting for {target} after {timeout:g}s")
        self.target = target
        self.timeout = timeout


class ProxyBindFailure(DevSessionError):
    """The proxy listener could not bind its port"""

    def __init__(self, port: int, reason: str):
        super().__init__(f"Proxy could not listen on port {port}: {reason}")
        self.port = port
        self.reason = reason


class UpstreamProxyError(DevSessionError):
    """Forwarding one request to the application service failed"""


class UnsupportedEncoding(UpstreamProxyError):
    """An HTML response used a content-encoding the rewriter cannot decode"""
