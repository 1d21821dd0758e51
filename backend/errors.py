# backend/errors.py
"""
Facility Sentinel Exception Hierarchy

Custom exceptions for discovery, protocol negotiation and monitoring,
with recovery hints for API consumers.
"""

from typing import Any, Dict, Optional


class SentinelError(Exception):
    """Base exception for all Facility Sentinel errors"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        recovery_hint: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        self.recovery_hint = recovery_hint

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "error": self.__class__.__name__,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.details:
            result["details"] = self.details
        if self.recovery_hint:
            result["recoveryHint"] = self.recovery_hint
        return result


# =============================================================================
# DISCOVERY ERRORS
# =============================================================================

class DiscoveryError(SentinelError):
    """Device discovery failed"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recovery_hint: str = "Check the address range and network connectivity"
    ):
        super().__init__(
            message=message,
            details=details,
            recoverable=True,
            recovery_hint=recovery_hint
        )


class InvalidRangeError(DiscoveryError):
    """Address range is malformed or inverted. Raised before any probe runs."""

    def __init__(self, message: str, start: Optional[str] = None, end: Optional[str] = None):
        super().__init__(
            message=message,
            details={"start": start, "end": end},
            recovery_hint="Use dotted-quad addresses sharing a prefix, e.g. 192.168.1.10 - 192.168.1.30"
        )


class EnvironmentUnsupportedError(DiscoveryError):
    """The runtime cannot perform any network introspection"""

    def __init__(self, message: str = "Network access is not available", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            recovery_hint="Run the backend on a host with access to the camera network"
        )


# =============================================================================
# PROTOCOL ERRORS
# =============================================================================

class ProtocolError(SentinelError):
    """
    Base exception for protocol client failures.

    Never fatal to a scan: callers treat it as "try the next protocol".
    """

    def __init__(
        self,
        message: str,
        protocol: str,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            details={"protocol": protocol, "target": target, **(details or {})},
            recoverable=True,
            recovery_hint="Device did not answer on this protocol; other protocols may still work"
        )
        self.protocol = protocol
        self.target = target


class ProtocolTimeoutError(ProtocolError):
    """Protocol call exceeded its deadline"""

    def __init__(self, protocol: str, target: Optional[str] = None, timeout_seconds: Optional[float] = None):
        super().__init__(
            message=f"{protocol} request to {target} timed out after {timeout_seconds}s",
            protocol=protocol,
            target=target,
            details={"timeoutSeconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class ProtocolConnectionError(ProtocolError):
    """Connection refused, reset, or rejected with an error status"""

    def __init__(
        self,
        protocol: str,
        target: Optional[str] = None,
        reason: str = "connection failed",
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message=f"{protocol} connection to {target} failed: {reason}",
            protocol=protocol,
            target=target,
            details={"reason": reason, "statusCode": status_code},
        )
        self.status_code = status_code


class MalformedResponseError(ProtocolError):
    """Device answered but the payload could not be interpreted"""

    def __init__(self, protocol: str, target: Optional[str] = None, raw_response: Optional[str] = None):
        super().__init__(
            message=f"Malformed {protocol} response from {target}",
            protocol=protocol,
            target=target,
            details={"rawResponse": raw_response[:500] if raw_response else None},
        )


# =============================================================================
# COLLABORATOR ERRORS
# =============================================================================

class MediaServerError(SentinelError):
    """Media server rejected or failed a request"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"statusCode": status_code, **(details or {})},
            recoverable=True,
            recovery_hint="Verify the media server is running and reachable"
        )
        self.status_code = status_code


# =============================================================================
# LOOKUP ERRORS
# =============================================================================

class DeviceNotFoundError(SentinelError):
    """No stored device for this facility/address"""

    def __init__(self, facility_id: str, address: str):
        super().__init__(
            message=f"Device {address} not found in facility {facility_id}",
            details={"facilityId": facility_id, "address": address},
            recoverable=True,
            recovery_hint="Run a discovery scan for the facility first"
        )


class AlertNotFoundError(SentinelError):
    """Alert id is not in the retained alert history"""

    def __init__(self, alert_id: str):
        super().__init__(
            message=f"Alert not found: {alert_id}",
            details={"alertId": alert_id},
            recoverable=True,
            recovery_hint="Alert may have been evicted from history"
        )


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ValidationError(SentinelError):
    """Input validation failed"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"field": field, "value": value, **(details or {})},
            recoverable=True,
            recovery_hint="Check input values and try again"
        )
