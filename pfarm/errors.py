from __future__ import annotations


class FarmError(Exception):
    """Base class for errors surfaced by the farm control plane."""

    code = "FarmError"
    status_code = 500


class ConfigInvalid(FarmError):
    code = "ConfigInvalid"


class CredentialsMissing(ConfigInvalid):
    code = "CredentialsMissing"


class PortExhausted(FarmError):
    code = "PortExhausted"
    status_code = 409


class PortUnavailable(FarmError):
    """An explicitly requested port is outside the range or already taken."""

    code = "PortUnavailable"
    status_code = 409


class ProxyNotFound(FarmError):
    code = "ProxyNotFound"
    status_code = 404

    def __init__(self, proxy_id: str):
        super().__init__(f"Proxy {proxy_id} not found")
        self.proxy_id = proxy_id


class UnitCreateFailed(FarmError):
    code = "UnitCreateFailed"
    status_code = 502


class ProbeTimeout(FarmError):
    code = "ProbeTimeout"
    status_code = 504


class NoResponse(FarmError):
    code = "NoResponse"
    status_code = 502


class RegistryIOError(FarmError):
    code = "RegistryIOError"


class RuntimeAPIError(FarmError):
    """The container runtime rejected or failed a call."""

    code = "RuntimeAPIError"
    status_code = 502


class UnitNotFound(RuntimeAPIError):
    code = "UnitNotFound"
    status_code = 404


class RestartLimitReached(FarmError):
    code = "RestartLimitReached"
    status_code = 409


class CycleInProgress(FarmError):
    code = "CycleInProgress"
    status_code = 409
