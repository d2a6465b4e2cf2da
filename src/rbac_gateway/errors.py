"""
Custom exception types for the RBAC gateway.
"""


class GatewayException(Exception):
    """Base exception for all gateway errors."""
    pass


class ConfigError(GatewayException):
    """Raised when the gateway configuration is invalid."""
    pass


class KubeConfigError(GatewayException):
    """Raised when the Kubernetes configuration cannot be loaded."""
    pass


class MalformedPath(GatewayException):
    """Raised when a request path does not match any known resource shape."""

    def __init__(self, path: str, reason: str = "unrecognized resource path") -> None:
        super().__init__(f"{reason}: '{path}'")
        self.path = path
        self.reason = reason


class UpstreamUnavailable(GatewayException):
    """Raised when the upstream API server cannot be reached or refuses a call."""
    pass


class PermissionResolutionError(GatewayException):
    """Raised when a role referenced by a binding cannot be resolved."""
    pass


class MergeSourceError(GatewayException):
    """Raised when one source of a merged watch ends abnormally."""
    pass


class MalformedQuery(GatewayException):
    """Raised when a list or watch query parameter has an unusable value."""

    def __init__(self, param: str, value: object) -> None:
        super().__init__(f"invalid value for query parameter '{param}': '{value}'")
        self.param = param
        self.value = value
