"""
Guard Errors
============

Exception taxonomy for execguard.

Configuration and policy errors are fatal at startup and propagate to the
caller. Everything that can go wrong while guarding a single command
(blocked, denied, timed out, subprocess failures) is converted by the
ExecutionGuard into a structured GuardResult; the exception types below
exist so that callers who prefer exceptions can ask for them via
GuardResult.raise_for_status().
"""

from typing import Optional


class GuardError(Exception):
    """Base class for all execguard errors."""


class ConfigError(GuardError):
    """Invalid configuration value."""


class PolicyLoadError(GuardError):
    """The guard policy is missing or malformed."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        if source:
            message = f"{source}: {message}"
        super().__init__(message)


class BlockedCommand(GuardError):
    """Command matched the blacklist and was never executed."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"BLOCKED: {reason}")


class ApprovalDenied(GuardError):
    """A RED command was denied by the approver."""

    def __init__(self, command: str, approval_id: Optional[str] = None):
        self.command = command
        self.approval_id = approval_id
        super().__init__(f"Approval denied for: {command}")


class ApprovalTimeout(GuardError):
    """No approval decision arrived before the timeout."""

    def __init__(self, command: str, timeout_seconds: float, approval_id: Optional[str] = None):
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.approval_id = approval_id
        super().__init__(f"Approval timed out after {timeout_seconds}s for: {command}")


class UnknownApprovalError(GuardError, KeyError):
    """Lookup of an approval id that was never registered."""

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Unknown approval id: {approval_id}")

    def __str__(self) -> str:
        return f"Unknown approval id: {self.approval_id}"


class SubprocessError(GuardError):
    """The command exited non-zero or could not be run."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)


class SubprocessTimeout(SubprocessError):
    """The command ran longer than the execution ceiling and was killed."""

    def __init__(self, command: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Command timed out after {timeout_seconds}s: {command}")


class OutputOverflow(SubprocessError):
    """The command produced more output than the buffer ceiling allows."""

    def __init__(self, command: str, max_bytes: int):
        self.max_bytes = max_bytes
        super().__init__(f"Command output exceeded {max_bytes} bytes: {command}")
