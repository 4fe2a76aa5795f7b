"""Exception hierarchy for nest-vm.

All exceptions inherit from NestVmError.

Hierarchy:
    NestVmError (base)
    ├── VmSpecValidationError      ← payload rejected before provisioning
    ├── VmNotFoundError            ← no config.json for the name
    ├── VmAlreadyExistsError       ← create on an existing name
    ├── CorruptedConfigError       ← config.json missing, unreadable, or not JSON
    ├── InvalidConfigError         ← config.json parses but no longer validates
    ├── CommandFailedError         ← external command exited nonzero
    │   └── CommandTimeoutError    ← external command exceeded its timeout
    ├── PrivilegeError             ← elevated command without privileges
    ├── VmStartError               ← process not running after launch
    ├── VmStopError                ← signal delivery or escalation failed
    ├── ToolkitInstallError        ← introspection toolkit install aborted
    └── MediaError                 ← install-media catalog misuse

ResourceProvisioningWarning is a UserWarning, not a NestVmError: the provisioner
builds one for each failed auxiliary step, logs it, and returns it in a report.
It is never raised to callers.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class NestVmError(Exception):
    """Base exception for all nest-vm errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class VmSpecValidationError(NestVmError):
    """VM payload failed validation.

    Attributes:
        errors: Structured validation errors (pydantic ``errors()`` format)
    """

    def __init__(
        self,
        message: str,
        errors: Sequence[dict[str, Any]] | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.errors = list(errors or [])


class VmNotFoundError(NestVmError):
    """No VM with the given name exists."""


class VmAlreadyExistsError(NestVmError):
    """A VM with the given name already exists."""


class CorruptedConfigError(NestVmError):
    """Stored VM configuration is missing, unreadable, or not valid JSON.

    Listing treats this as recoverable: the VM directory is removed and the
    entry dropped with a warning.
    """


class InvalidConfigError(NestVmError):
    """Stored VM configuration is well-formed JSON that no longer validates.

    Unknown keys, out-of-range values, or a name that differs from the
    directory. Listing skips the entry with a warning and leaves the
    directory (and its disk) in place.
    """


class CommandFailedError(NestVmError):
    """External command returned nonzero or could not be executed.

    Attributes:
        argv: Command that was run
        returncode: Exit status (None if the command never ran)
        stdout: Captured standard output
        stderr: Captured standard error
        step: Name of the operation step that ran the command
    """

    def __init__(
        self,
        message: str,
        *,
        argv: Sequence[str] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        step: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"argv": list(argv), "returncode": returncode, "step": step})
        super().__init__(message, ctx)
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.step = step


class CommandTimeoutError(CommandFailedError):
    """External command exceeded its timeout and was terminated."""


class PrivilegeError(NestVmError):
    """Elevated command requested without root privileges or a container."""


class VmStartError(NestVmError):
    """VM process was not observed running after launch.

    Attributes:
        log_tail: Last lines of the VM's qemu.log, for diagnosis
    """

    def __init__(self, message: str, log_tail: str = "", context: dict[str, Any] | None = None):
        super().__init__(message, context)
        self.log_tail = log_tail


class VmStopError(NestVmError):
    """VM process could not be signalled or did not exit."""


class ToolkitInstallError(NestVmError):
    """Introspection toolkit installation failed.

    The partial checkout has been removed when this is raised.
    """


class MediaError(NestVmError):
    """Install-media name is invalid or the file is missing."""


class ResourceProvisioningWarning(UserWarning):  # noqa: N818
    """Auxiliary provisioning step failed; the VM operation proceeds."""
