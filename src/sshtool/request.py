"""The unit of work applied identically to every target."""

from dataclasses import dataclass
from pathlib import Path

from sshtool.errors import RequestError


@dataclass(frozen=True)
class ExecutionRequest:
    """What to do on each target.

    A request runs either a shell command or a local script (never both),
    optionally after copying a file or directory to every target. A request
    with only ``copy_source`` is a copy-only operation.

    Attributes:
        command: Shell command line to run remotely.
        script: Local script to stage on each target and run there.
        script_args: Positional arguments for the script.
        copy_source: Local file or directory to copy first.
    """

    command: str | None = None
    script: Path | None = None
    script_args: tuple[str, ...] = ()
    copy_source: Path | None = None

    def __post_init__(self) -> None:
        if self.command is not None and self.script is not None:
            raise RequestError("a command and a script are mutually exclusive")
        if self.command is None and self.script is None and self.copy_source is None:
            raise RequestError("nothing to do: give a command, a script, or a path to copy")
        if self.script_args and self.script is None:
            raise RequestError("script arguments given without a script")

    @classmethod
    def from_commands(
        cls, commands: list[str], profile: str | None = "~/.profile", **kwargs
    ) -> "ExecutionRequest":
        """Join several commands into one remote command line.

        The commands are joined with ";" and prefixed with sourcing the
        profile file, when one is configured and exists remotely.
        """
        command = ";".join(commands)
        if profile:
            command = f"[ -f {profile} ] && . {profile};{command}"
        return cls(command=command, **kwargs)

    def validate_paths(self) -> None:
        """Check that local paths referenced by the request exist.

        Raises:
            RequestError: If the script is not a file or the copy source is missing.
        """
        if self.script is not None and not self.script.is_file():
            raise RequestError(f"script file not found: {self.script}")
        if self.copy_source is not None and not self.copy_source.exists():
            raise RequestError(f"path to copy not found: {self.copy_source}")

    @property
    def copy_only(self) -> bool:
        """Whether the request copies without running anything."""
        return self.command is None and self.script is None
