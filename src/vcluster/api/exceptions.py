#!/usr/bin/env python3
"""Exception Hierarchy for the vcluster syncer.

This module provides a structured exception hierarchy for every failure the
syncer can surface, from malformed configuration to a host API call that
returned 404.

Design Principles:
    - All exceptions inherit from VClusterError base class
    - Exceptions preserve context (original error, timestamps, details)
    - Lifecycle errors always carry the phase and the unit/resource-kind name
    - Configuration errors echo the offending raw input back

Exception Hierarchy:
    VClusterError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    │   ├── ServiceMappingError
    │   └── MissingCapabilityError
    ├── SyncerLifecycleError (bring-up failed)
    │   ├── ConstructionError
    │   ├── InitializationError
    │   ├── IndexRegistrationError
    │   └── RegistrationError
    ├── ManagerError (process-level fault)
    │   ├── ManagerStartupError
    │   └── CacheSyncError
    └── APIError (Kubernetes REST API)
        ├── NotFoundError
        ├── ConflictError
        ├── ServerError
        └── NetworkError
"""
from datetime import datetime, timezone
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class VClusterError(Exception):
    """Base exception for all syncer errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "CONSTRUCTION_ERROR")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might be recoverable with retry
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.cause = cause
        self.recoverable = recoverable

        # Chain the original exception if provided
        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f": {self.cause}")
        return "".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================

class ConfigurationError(VClusterError):
    """Raised when configuration is missing or invalid.

    These errors require fixing configuration before retry.
    """

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        kwargs.setdefault("code", "CONFIGURATION_ERROR")
        super().__init__(
            message,
            details=details,
            recoverable=False,
            **kwargs,
        )


class ServiceMappingError(ConfigurationError):
    """Raised when a service mapping string does not match the grammar.

    The offending raw mapping is always part of the message. When the option
    the mapping came from is known (e.g. "map_host_services") it is named
    too.
    """

    def __init__(self, mapping: str, expected: str, option: str = "", **kwargs):
        self.mapping = mapping
        self.expected = expected
        self.option = option

        message = f"invalid service mapping {mapping!r}, please use {expected}"
        details = {"mapping": mapping}
        if option:
            message = f"parse {option}: {message}"
            details["option"] = option

        super().__init__(
            message,
            code="SERVICE_MAPPING_ERROR",
            details=details,
            **kwargs,
        )


class MissingCapabilityError(ConfigurationError):
    """Raised when a sync unit is neither a fake syncer nor a syncer."""

    def __init__(self, unit_name: str, **kwargs):
        self.unit_name = unit_name
        super().__init__(
            f"syncer {unit_name} does not implement fake syncer or syncer interface",
            code="MISSING_CAPABILITY",
            details={"unit": unit_name},
            **kwargs,
        )


# ============================================
# Lifecycle Errors
# ============================================

class SyncerLifecycleError(VClusterError):
    """Base class for failures during controller bring-up.

    Attributes:
        phase: Lifecycle phase that failed (construct, initialize, index, register)
        name: Unit or resource-kind name the failure belongs to
    """

    phase = "lifecycle"

    def __init__(self, message: str, name: str, **kwargs):
        self.name = name
        details = kwargs.pop("details", {})
        details.setdefault("phase", self.phase)
        details.setdefault("name", name)
        super().__init__(message, details=details, **kwargs)


class ConstructionError(SyncerLifecycleError):
    """Raised when a unit constructor fails."""

    phase = "construct"

    def __init__(self, resource_kind: str, **kwargs):
        super().__init__(
            f"register {resource_kind} controller",
            name=resource_kind,
            code="CONSTRUCTION_ERROR",
            **kwargs,
        )


class InitializationError(SyncerLifecycleError):
    """Raised when a unit initializer fails."""

    phase = "initialize"

    def __init__(self, unit_name: str, **kwargs):
        super().__init__(
            f"ensure prerequisites for {unit_name} syncer",
            name=unit_name,
            code="INITIALIZATION_ERROR",
            **kwargs,
        )


class IndexRegistrationError(SyncerLifecycleError):
    """Raised when a unit fails to register its cache indices."""

    phase = "index"

    def __init__(self, unit_name: str, **kwargs):
        super().__init__(
            f"register indices for {unit_name} syncer",
            name=unit_name,
            code="INDEX_REGISTRATION_ERROR",
            **kwargs,
        )


class RegistrationError(SyncerLifecycleError):
    """Raised when a unit or side controller cannot be registered."""

    phase = "register"

    def __init__(self, message: str, name: str, **kwargs):
        super().__init__(
            message,
            name=name,
            code="REGISTRATION_ERROR",
            **kwargs,
        )


# ============================================
# Manager Errors (Process-Level)
# ============================================

class ManagerError(VClusterError):
    """Base class for manager runtime failures.

    These are unrecoverable for the whole process, not just one subsystem.
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", False)
        super().__init__(message, **kwargs)


class ManagerStartupError(ManagerError):
    """Raised when a background manager's start() fails."""

    def __init__(self, manager_name: str, **kwargs):
        self.manager_name = manager_name
        super().__init__(
            f"start {manager_name} manager",
            code="MANAGER_STARTUP_ERROR",
            details={"manager": manager_name},
            **kwargs,
        )


class CacheSyncError(ManagerError):
    """Raised when waiting for a manager cache is aborted."""

    def __init__(self, manager_name: str, **kwargs):
        self.manager_name = manager_name
        super().__init__(
            f"wait for {manager_name} manager cache sync",
            code="CACHE_SYNC_ERROR",
            details={"manager": manager_name},
            **kwargs,
        )


# ============================================
# Kubernetes API Errors
# ============================================

class APIError(VClusterError):
    """Base class for Kubernetes REST API errors.

    Attributes:
        status_code: HTTP status code
        response_body: Raw response body (truncated)
        endpoint: API path that failed
        method: HTTP method used
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if method:
            details["method"] = method

        self.status_code = status_code
        self.response_body = response_body[:500] if response_body else None
        self.endpoint = endpoint
        self.method = method

        super().__init__(message, details=details, **kwargs)


class NotFoundError(APIError):
    """Raised when the requested object does not exist (404)."""

    def __init__(self, message: str = "Object not found", **kwargs):
        super().__init__(message, status_code=404, code="NOT_FOUND", **kwargs)


class ConflictError(APIError):
    """Raised on 409, the object already exists or was modified concurrently."""

    def __init__(self, message: str = "Object conflict", **kwargs):
        super().__init__(message, status_code=409, code="CONFLICT", **kwargs)


class ServerError(APIError):
    """Raised when the API server returns 5xx."""

    def __init__(self, message: str, status_code: int = 500, **kwargs):
        super().__init__(
            message,
            status_code=status_code,
            code="SERVER_ERROR",
            recoverable=True,
            **kwargs,
        )


class NetworkError(APIError):
    """Raised when the API server cannot be reached."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "NETWORK_ERROR")
        super().__init__(message, recoverable=True, **kwargs)
