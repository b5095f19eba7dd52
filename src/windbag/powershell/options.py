"""PowerShell process creation options."""

from __future__ import annotations

from dataclasses import dataclass, field

from windbag.shared.enums import ExecutionPolicy, ExecutorName, IOFormat

_PREFERENCES = "$ErrorActionPreference='Stop'; $ProgressPreference='SilentlyContinue';"


@dataclass(frozen=True, slots=True)
class CreateOptions:
    """Flags passed to the PowerShell executable for every mode."""

    executor: str = ExecutorName.POWERSHELL.value
    sta: bool = False
    no_profile: bool = False
    input_format: IOFormat | None = None
    output_format: IOFormat | None = None
    configuration_name: str | None = None
    execution_policy: ExecutionPolicy | None = None
    extra_args: tuple[str, ...] = field(default_factory=tuple)

    def base_args(self) -> list[str]:
        """Return the executable plus creation flags shared by all modes."""
        args = [self.executor]
        if self.sta:
            args.append("-Sta")
        if self.no_profile:
            args.append("-NoProfile")
        if self.input_format is not None:
            args.extend(["-InputFormat", self.input_format.value])
        if self.output_format is not None:
            args.extend(["-OutputFormat", self.output_format.value])
        if self.configuration_name:
            args.extend(["-ConfigurationName", self.configuration_name])
        if self.execution_policy is not None:
            args.extend(["-ExecutionPolicy", self.execution_policy.value])
        args.extend(self.extra_args)
        return args

    def interactive_args(self) -> list[str]:
        """Persistent shell reading statements from standard input."""
        return [*self.base_args(), "-NoLogo", "-NonInteractive", "-NoExit", "-WindowStyle", "Hidden", "-Command", "-"]

    def command_args(self, command: str) -> list[str]:
        """One-shot ``-Command`` invocation with strict error handling."""
        return [
            *self.base_args(),
            "-NoLogo",
            "-NonInteractive",
            "-WindowStyle",
            "Hidden",
            "-Command",
            f"{_PREFERENCES} {command}",
        ]

    def script_args(self, path: str, *args: str) -> list[str]:
        """One-shot ``-File`` invocation."""
        return [*self.base_args(), "-NoLogo", "-NonInteractive", "-WindowStyle", "Hidden", "-File", path, *args]


def render(args: list[str]) -> str:
    """Join an argument vector into the command line sent over SSH.

    Windows hosts hand the line to their own shell, so no POSIX quoting is applied.
    """
    return " ".join(args)
