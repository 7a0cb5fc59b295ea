"""SSH transport layer: streaming remote execution, remote copy, script staging."""

import asyncio
import logging
import posixpath
import re
import shlex
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from sshtool.channels import Channel, merge, stream_to_channel
from sshtool.config import ToolConfig
from sshtool.errors import (
    CopyError,
    LaunchError,
    RemoteExitError,
    UnsafeDestinationError,
)
from sshtool.targets import Target

logger = logging.getLogger(__name__)

# Reason: LogLevel=QUIET goes first so caller options cannot turn ssh's own
# diagnostics back on; they would end up in the collected output.
QUIET_OPTION = ["-o", "LogLevel=QUIET"]

TARGET_ENV_VAR = "SSHTOOL_TARGET"
SCRIPT_PREFIX = "__sshtool_"


@dataclass
class TransportSettings:
    """How ssh and scp are invoked.

    Attributes:
        ssh_command: Executable for remote commands.
        scp_command: Executable for copies.
        options: Values passed as "-o <value>" to both.
        identity_file: Passed as "-i <file>" to both, when set.
        safe_remote_dir: Only remote directory copies may target.
        profile: Remote profile file sourced before running a script.
    """

    ssh_command: str = "ssh"
    scp_command: str = "scp"
    options: list[str] = field(default_factory=list)
    identity_file: str | None = None
    safe_remote_dir: str = "/tmp/"
    profile: str | None = "~/.profile"

    @classmethod
    def from_config(cls, config: ToolConfig) -> "TransportSettings":
        """Build transport settings from the tool configuration."""
        return cls(
            ssh_command=config.ssh_command,
            scp_command=config.scp_command,
            options=list(config.ssh_options),
            identity_file=config.identity_file,
            safe_remote_dir=config.safe_remote_dir,
            profile=config.profile,
        )

    def common_args(self) -> list[str]:
        """Options shared by ssh and scp."""
        args: list[str] = []
        for option in self.options:
            args += ["-o", option]
        if self.identity_file:
            args += ["-i", self.identity_file]
        return args


@dataclass
class RemoteResult:
    """Result of a synchronous remote round trip.

    Attributes:
        stdout: Standard output from the command.
        stderr: Standard error from the command.
        returncode: Exit code of the transport process.
        target: Name of the target the command ran on.
    """

    stdout: str
    stderr: str
    returncode: int
    target: str


@dataclass
class Execution:
    """The two channels a started remote execution exposes.

    Attributes:
        output: Combined stdout and stderr text, interleaved as it arrives.
        errors: Stream read errors, then a RemoteExitError on non-zero exit.
    """

    output: Channel[str]
    errors: Channel[BaseException]


def unique_script_name(script: str | Path) -> str:
    """Name for a staged copy of ``script`` that no other invocation uses.

    Format: ``__sshtool_<random uuid>_<script base name>``. Falls back to a
    nanosecond timestamp when no randomness source is available.
    """
    try:
        token = str(uuid.uuid4())
    except NotImplementedError:
        token = str(time.time_ns())
    name = f"{SCRIPT_PREFIX}{token}_{Path(script).name}"
    logger.debug("Script name is %s", name)
    return name


def double_quote(arg: str) -> str:
    """Quote ``arg`` for a double-quoted shell context.

    Backslashes, double quotes and backticks are escaped; ``$`` is not, so
    references such as "$SSHTOOL_TARGET" expand on the remote side.
    """
    escaped = re.sub(r'([\\"`])', r"\\\1", arg)
    return f'"{escaped}"'


def target_command(target: Target, command: str) -> str:
    """Prefix a remote command line with the per-target environment."""
    return f'export LC_ALL=C; export {TARGET_ENV_VAR}="{target.host}";{command}'


class RemoteExecutor:
    """Runs requests against single targets through ssh and scp."""

    def __init__(self, settings: TransportSettings | None = None):
        self.settings = settings or TransportSettings()

    def build_ssh_cmd(self, target: Target, command: str) -> list[str]:
        """Build the full ssh invocation for ``command`` on ``target``.

        Args:
            target: Host to run on.
            command: Remote command line, before the environment prefix.

        Returns:
            list[str]: Executable and arguments.
        """
        cmd = [self.settings.ssh_command, *QUIET_OPTION, *self.settings.common_args(), "-t"]
        if target.port is not None:
            cmd += ["-p", str(target.port)]
        cmd += [target.host, target_command(target, command)]
        return cmd

    def build_scp_cmd(self, target: Target, source: str | Path, destination: str) -> list[str]:
        """Build the scp invocation copying ``source`` to ``target:destination``."""
        cmd = [self.settings.scp_command, "-r", *self.settings.common_args()]
        if target.port is not None:
            cmd += ["-P", str(target.port)]
        cmd += [str(source), f"{target.host}:{destination}"]
        return cmd

    async def _spawn(self, cmd: list[str], target: Target) -> asyncio.subprocess.Process:
        logger.debug("CMD = %s", shlex.join(cmd))
        try:
            # Reason: stdin is never the caller's terminal; several ssh
            # processes reading the same tty would fight over it.
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise LaunchError(f"cannot start {cmd[0]} for {target.name}: {exc}") from exc

    async def start(self, tg: asyncio.TaskGroup, target: Target, command: str) -> Execution:
        """Start ``command`` on ``target`` and stream its results.

        Returns once the ssh process has started; reading happens in tasks
        owned by ``tg``. Both returned channels close once fully drained.

        Args:
            tg: Task group owning the reader, merge and relay tasks.
            target: Host to run on.
            command: Remote command line.

        Returns:
            Execution: Combined output and error channels.

        Raises:
            LaunchError: If the ssh process cannot be started. No channel
                activity happens in that case.
        """
        proc = await self._spawn(self.build_ssh_cmd(target, command), target)

        stdout_data, stdout_errors = stream_to_channel(tg, proc.stdout)
        stderr_data, stderr_errors = stream_to_channel(tg, proc.stderr)
        output = merge(tg, stdout_data, stderr_data)
        read_errors = merge(tg, stdout_errors, stderr_errors)

        errors: Channel[BaseException] = Channel()
        tg.create_task(self._relay_errors(proc, read_errors, errors))
        return Execution(output=output, errors=errors)

    async def _relay_errors(
        self,
        proc: asyncio.subprocess.Process,
        read_errors: Channel[BaseException],
        errors: Channel[BaseException],
    ) -> None:
        try:
            async for exc in read_errors:
                await errors.send(exc)
            returncode = await proc.wait()
            if returncode != 0:
                await errors.send(RemoteExitError(returncode))
        finally:
            errors.close()

    async def run(self, target: Target, command: str) -> RemoteResult:
        """Run ``command`` on ``target`` and wait for it to finish.

        Args:
            target: Host to run on.
            command: Remote command line.

        Returns:
            RemoteResult: Collected stdout, stderr and exit code.

        Raises:
            LaunchError: If ssh cannot be started.
            RemoteExitError: If the remote command exits non-zero.
        """
        proc = await self._spawn(self.build_ssh_cmd(target, command), target)
        stdout_bytes, stderr_bytes = await proc.communicate()
        result = RemoteResult(
            stdout=stdout_bytes.decode(errors="replace"),
            stderr=stderr_bytes.decode(errors="replace"),
            returncode=proc.returncode or 0,
            target=target.name,
        )
        if result.returncode != 0:
            raise RemoteExitError(result.returncode, result.stderr.strip())
        return result

    def copy_destination(self, source: str | Path) -> str:
        """Remote path a copy of ``source`` lands on: safe dir + base name."""
        return self.settings.safe_remote_dir + Path(source).name

    def check_destination(self, destination: str) -> None:
        """Refuse destinations outside the safe remote directory.

        Raises:
            UnsafeDestinationError: If ``destination`` is not strictly inside it.
        """
        safe_dir = self.settings.safe_remote_dir
        normalized = posixpath.normpath(destination)
        if (
            not destination.startswith(safe_dir)
            or not (normalized + "/").startswith(safe_dir)
            or normalized + "/" == safe_dir
        ):
            raise UnsafeDestinationError(
                f"SSHTOOL internal: cowardly refusing to remove and copy to anywhere but {safe_dir}"
            )

    async def copy(self, target: Target, source: str | Path, destination: str) -> None:
        """Copy a file or directory to ``target``, replacing what is there.

        Anything already at ``destination`` is removed first, which is why
        the destination must lie inside the safe remote directory.

        Args:
            target: Host to copy to.
            source: Local file or directory.
            destination: Absolute remote path.

        Raises:
            UnsafeDestinationError: Before anything is sent, for unsafe destinations.
            LaunchError: If ssh or scp cannot be started.
            RemoteExitError: If the removal fails.
            CopyError: If scp exits non-zero.
        """
        self.check_destination(destination)
        await self.run(target, f"rm -rf {shlex.quote(destination)}")

        cmd = self.build_scp_cmd(target, source, destination)
        logger.debug("Copy file CMD = %s", shlex.join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise LaunchError(f"cannot start {cmd[0]} for {target.name}: {exc}") from exc
        _, stderr_bytes = await proc.communicate()
        if proc.returncode:
            detail = stderr_bytes.decode(errors="replace").strip()
            message = f"copy of {source} to {target.host}:{destination} failed: exit status {proc.returncode}"
            if detail:
                message = f"{message}: {detail}"
            raise CopyError(message)

    def script_command(self, remote_name: str, args: tuple[str, ...] | list[str]) -> str:
        """Remote command line that runs a staged script and removes it.

        The removal is part of the same command line, since the connection
        may not survive long enough to run a second command. The script's
        exit status is preserved. Arguments are double-quoted, so the remote
        shell still expands variables in them.
        """
        remote_dir = self.settings.safe_remote_dir
        remote_path = shlex.quote(remote_dir + remote_name)
        script_line = " ".join([remote_path, *(double_quote(arg) for arg in args)])
        profile = self.settings.profile
        source_profile = f"[ -f {profile} ] && . {profile};" if profile else ""
        return (
            f"cd {shlex.quote(remote_dir)};chmod +x {remote_path};"
            f"{source_profile}{script_line};EX=$?;"
            f"rm -f {remote_path};exit $EX"
        )

    async def start_script(
        self,
        tg: asyncio.TaskGroup,
        target: Target,
        script: str | Path,
        args: tuple[str, ...] | list[str] = (),
    ) -> Execution:
        """Stage ``script`` on ``target`` under a unique name and run it.

        Args:
            tg: Task group owning the streaming tasks.
            target: Host to run on.
            script: Local script path.
            args: Positional arguments for the script.

        Returns:
            Execution: Combined output and error channels.

        Raises:
            CopyError: If staging the script fails.
            LaunchError: If ssh or scp cannot be started.
            RemoteExitError: If clearing the staging path fails.
        """
        remote_name = unique_script_name(script)
        await self.copy(target, script, self.settings.safe_remote_dir + remote_name)
        return await self.start(tg, target, self.script_command(remote_name, args))
