"""Error taxonomy for thread lifecycle operations."""

from __future__ import annotations


class ThreadLifecycleError(RuntimeError):
    reason_code = "thread_lifecycle_error"

    def __init__(self, message: str, reason_code: str | None = None) -> None:
        super().__init__(message)
        if reason_code:
            self.reason_code = reason_code


class ConfigError(ThreadLifecycleError):
    """Missing or invalid external configuration; never retried."""

    reason_code = "config_error"


class LockTimeout(ThreadLifecycleError):
    """The registry gate stayed contended past the acquisition bound."""

    reason_code = "lock_timeout"

    def __init__(self, lock_path: str, timeout_s: float) -> None:
        self.lock_path = lock_path
        self.timeout_s = timeout_s
        super().__init__(f"Timed out acquiring {lock_path} after {timeout_s:.2f}s")


class PoolExhausted(ThreadLifecycleError):
    reason_code = "pool_exhausted"

    def __init__(self, max_threads: int) -> None:
        self.max_threads = max_threads
        super().__init__(f"No available thread slots (max {max_threads})")


class PortUnavailable(ThreadLifecycleError):
    reason_code = "port_unavailable"

    def __init__(self, port: int) -> None:
        self.port = port
        super().__init__(f"Port {port} already in use")


class BranchInUse(ThreadLifecycleError):
    reason_code = "branch_in_use"

    def __init__(self, branch: str, thread_id: int) -> None:
        self.branch = branch
        self.thread_id = thread_id
        super().__init__(f"Branch {branch!r} is already bound to thread {thread_id}")


class InvalidStatus(ThreadLifecycleError):
    reason_code = "invalid_status"


class DuplicateThread(ThreadLifecycleError):
    """A record with the same id is already registered."""

    reason_code = "duplicate_thread_id"

    def __init__(self, thread_id: int) -> None:
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} is already registered")


class NotFound(ThreadLifecycleError):
    reason_code = "not_found"

    def __init__(self, thread_id: int) -> None:
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} not found in registry")


class CorruptRegistry(ThreadLifecycleError):
    """The registry file holds a layout this version cannot read."""

    reason_code = "corrupt_registry"

    def __init__(self, message: str, line_number: int | None = None) -> None:
        self.line_number = line_number
        if line_number is not None:
            message = f"{message} (line {line_number})"
        super().__init__(message)


class ProvisioningError(ThreadLifecycleError):
    """A provisioning step failed; raised only after rollback has completed.

    Attributes:
        step: Name of the step whose action failed.
        thread_id: Allocated id that was released, if allocation had happened.
        rollback_warnings: Compensating actions that themselves failed.
    """

    reason_code = "provisioning_failed"

    def __init__(
        self,
        step: str,
        message: str,
        *,
        thread_id: int | None = None,
        rollback_warnings: list[str] | None = None,
    ) -> None:
        self.step = step
        self.thread_id = thread_id
        self.rollback_warnings = list(rollback_warnings or [])
        super().__init__(f"Provisioning failed at step '{step}': {message}")


class TeardownWarning(ThreadLifecycleError):
    reason_code = "teardown_warning"

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        self.message = message
        super().__init__(message)


class ExternalCommandError(ThreadLifecycleError):
    """A git or container runtime invocation exited unsuccessfully."""

    reason_code = "external_command_failed"

    def __init__(self, command: list[str], returncode: int, stderr: str = "") -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"{' '.join(command)} exited with {returncode}: {detail}")


__all__ = [
    "BranchInUse",
    "ConfigError",
    "CorruptRegistry",
    "DuplicateThread",
    "ExternalCommandError",
    "InvalidStatus",
    "LockTimeout",
    "NotFound",
    "PoolExhausted",
    "PortUnavailable",
    "ProvisioningError",
    "TeardownWarning",
    "ThreadLifecycleError",
]
