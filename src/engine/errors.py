# src/engine/errors.py
"""
Error taxonomy for the scan engine.

Allocation-time errors (validation, authorization, environment) are raised
synchronously to the caller before any sandbox exists. Execution-time errors
surface asynchronously as scan_error events and scan log entries.
"""


class ScanEngineError(Exception):
    code = "scan_engine_error"
    status_code = 500

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(ScanEngineError):
    code = "validation_error"
    status_code = 400


class InvalidTargetError(ValidationError):
    code = "invalid_target"


class RejectedFlagError(ValidationError):
    code = "rejected_flag"


class UnsupportedToolError(ValidationError):
    code = "unsupported_tool"


class AuthorizationError(ScanEngineError):
    code = "authorization_error"
    status_code = 403


class EnvironmentUnavailableError(ScanEngineError):
    code = "environment_unavailable"
    status_code = 503


class ExecutionError(ScanEngineError):
    code = "execution_error"


class ScanTimeoutError(ExecutionError):
    code = "timeout"


class SandboxBusyError(ExecutionError):
    code = "sandbox_busy"
    status_code = 409


class TransportError(ScanEngineError):
    code = "transport_error"


class InvalidTransitionError(ScanEngineError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, scan_id: str, current: str, target: str):
        super().__init__(
            f"Scan {scan_id} cannot move from {current} to {target}",
            {"scan_id": scan_id, "current": current, "target": target},
        )
        self.scan_id = scan_id
        self.current = current
        self.target = target


class ScanNotFoundError(ScanEngineError):
    code = "scan_not_found"
    status_code = 404
