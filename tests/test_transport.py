"""Tests for the SSH transport (ssh.py).

ssh and scp are never run: asyncio.create_subprocess_exec is replaced by the
FakeTransport fixture from conftest.py.
"""

import asyncio
import re
import shlex
import uuid

import pytest

from sshtool.errors import CopyError, LaunchError, RemoteExitError, UnsafeDestinationError
from sshtool.ssh import RemoteExecutor, TransportSettings, double_quote, unique_script_name
from sshtool.targets import Target


class RecordingGroup:
    """Task group stand-in that counts (and discards) the tasks it is given."""

    def __init__(self):
        self.created = 0

    def create_task(self, coro):
        self.created += 1
        coro.close()


async def _collect(execution) -> tuple[str, list]:
    """Drain both channels of an Execution concurrently."""
    chunks, errors = await asyncio.gather(
        execution.output.drain(), execution.errors.drain()
    )
    return "".join(chunks), errors


# ===========================================================================
# Command building
# ===========================================================================


def test_build_ssh_cmd_defaults():
    """The quiet option comes first, then -t, the host and the prefixed command."""
    executor = RemoteExecutor()

    cmd = executor.build_ssh_cmd(Target(host="as1-11"), "uptime")

    assert cmd == [
        "ssh", "-o", "LogLevel=QUIET", "-t", "as1-11",
        'export LC_ALL=C; export SSHTOOL_TARGET="as1-11";uptime',
    ]


def test_build_ssh_cmd_with_options_identity_and_port():
    """Caller options, identity file and an explicit port are passed through."""
    settings = TransportSettings(
        ssh_command="/usr/local/bin/ssh",
        options=["ConnectTimeout=1", "ConnectionAttempts=1"],
        identity_file="/keys/id",
    )
    executor = RemoteExecutor(settings)

    cmd = executor.build_ssh_cmd(Target(host="alpha", port=2222), "true")

    assert cmd[:10] == [
        "/usr/local/bin/ssh",
        "-o", "LogLevel=QUIET",
        "-o", "ConnectTimeout=1",
        "-o", "ConnectionAttempts=1",
        "-i", "/keys/id",
        "-t",
    ]
    assert cmd[10:12] == ["-p", "2222"]
    assert cmd[12] == "alpha"


def test_build_scp_cmd_uses_capital_p_for_port():
    """scp gets -r, the shared options, -P for the port, and host:destination."""
    executor = RemoteExecutor(TransportSettings(options=["ConnectTimeout=1"]))

    cmd = executor.build_scp_cmd(Target(host="alpha", port=2222), "gen", "/tmp/gen")

    assert cmd == [
        "scp", "-r", "-o", "ConnectTimeout=1", "-P", "2222", "gen", "alpha:/tmp/gen",
    ]


# ===========================================================================
# Streaming execution
# ===========================================================================


@pytest.mark.asyncio
async def test_start_merges_stdout_and_stderr(fake_transport):
    """Output carries both streams; a zero exit adds no error."""
    fake_transport.respond("alpha", stdout=b"out\n", stderr=b"err\n")
    executor = RemoteExecutor()

    async with asyncio.TaskGroup() as tg:
        execution = await executor.start(tg, Target(host="alpha"), "cmd")
        output, errors = await _collect(execution)

    # Reason: the interleaving of the two streams is unspecified.
    assert sorted(output.splitlines()) == ["err", "out"]
    assert errors == []
    assert fake_transport.calls[0][0] == "ssh"


@pytest.mark.asyncio
async def test_start_reports_nonzero_exit(fake_transport):
    """A non-zero exit status is appended to the error channel."""
    fake_transport.respond("alpha", stdout=b"fail\n", returncode=3)
    executor = RemoteExecutor()

    async with asyncio.TaskGroup() as tg:
        execution = await executor.start(tg, Target(host="alpha"), "cmd")
        output, errors = await _collect(execution)

    assert output == "fail\n"
    assert len(errors) == 1
    assert isinstance(errors[0], RemoteExitError)
    assert errors[0].returncode == 3
    assert str(errors[0]) == "exit status 3"


@pytest.mark.asyncio
async def test_start_failure_raises_synchronously(fake_transport):
    """If ssh cannot be started, start() raises LaunchError and spawns nothing."""
    fake_transport.unstartable.add("alpha")
    executor = RemoteExecutor()
    group = RecordingGroup()

    with pytest.raises(LaunchError, match="cannot start ssh for alpha"):
        await executor.start(group, Target(host="alpha"), "cmd")

    # Reason: no reader, merge or relay task may exist for an unstarted process.
    assert group.created == 0


@pytest.mark.asyncio
async def test_run_collects_result(fake_transport):
    """run() waits for the command and returns its output."""
    fake_transport.respond("alpha", stdout=b"hi\n")

    result = await RemoteExecutor().run(Target(host="alpha"), "echo hi")

    assert result.stdout == "hi\n"
    assert result.returncode == 0
    assert result.target == "alpha"


@pytest.mark.asyncio
async def test_run_raises_on_failure(fake_transport):
    """run() raises RemoteExitError carrying the remote stderr."""
    fake_transport.respond("alpha", stderr=b"denied\n", returncode=255)

    with pytest.raises(RemoteExitError, match="exit status 255: denied"):
        await RemoteExecutor().run(Target(host="alpha"), "true")


# ===========================================================================
# Unique names
# ===========================================================================


def test_unique_script_name_format_and_uniqueness():
    """Names embed a random token and the script's base name, and never repeat."""
    pattern = "^__sshtool_[^_]+_" + re.escape("foo-bar.sh") + "$"

    names = {unique_script_name("foo/foo-bar.sh") for _ in range(64)}

    assert len(names) == 64
    assert all(re.match(pattern, name) for name in names)


def test_unique_script_name_falls_back_to_timestamp(monkeypatch):
    """Without a randomness source the token is a nanosecond timestamp."""

    def no_randomness():
        raise NotImplementedError("no urandom")

    monkeypatch.setattr(uuid, "uuid4", no_randomness)

    name = unique_script_name("run.sh")

    assert re.match(r"^__sshtool_\d+_run\.sh$", name)


# ===========================================================================
# Copy and script staging
# ===========================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("destination", ["/etc/passwd", "/tmp", "/tmp/", "/tmp/../etc", "tmp/x"])
async def test_copy_refuses_unsafe_destination(fake_transport, destination):
    """Copies outside the safe directory fail before any process is started."""
    executor = RemoteExecutor()

    with pytest.raises(UnsafeDestinationError, match="cowardly refusing"):
        await executor.copy(Target(host="alpha"), "gen", destination)

    assert fake_transport.calls == []


@pytest.mark.asyncio
async def test_copy_removes_then_copies(fake_transport):
    """The destination is removed over ssh, then scp copies the source."""
    executor = RemoteExecutor()

    await executor.copy(Target(host="alpha"), "build/gen", "/tmp/gen")

    assert len(fake_transport.calls) == 2
    removal, copy = fake_transport.calls
    assert removal[0] == "ssh"
    assert removal[-1].endswith("rm -rf /tmp/gen")
    assert copy == ("scp", "-r", "build/gen", "alpha:/tmp/gen")


@pytest.mark.asyncio
async def test_copy_failure_raises_copy_error(fake_transport):
    """A failing scp surfaces as CopyError with its stderr."""
    fake_transport.scp_returncode = 1

    with pytest.raises(CopyError, match="exit status 1: scp: failed"):
        await RemoteExecutor().copy(Target(host="alpha"), "gen", "/tmp/gen")


def test_copy_destination_is_inside_safe_dir():
    """Copies land in the safe directory under their base name."""
    executor = RemoteExecutor()

    assert executor.copy_destination("/home/u/scion/gen") == "/tmp/gen"


def test_script_command_cleans_up_and_keeps_exit_status():
    """The staged script is made executable, run with quoted args, then removed."""
    executor = RemoteExecutor()

    line = executor.script_command("__sshtool_x_s.sh", ["a b", "c"])

    assert line == (
        "cd /tmp/;chmod +x /tmp/__sshtool_x_s.sh;"
        "[ -f ~/.profile ] && . ~/.profile;"
        "/tmp/__sshtool_x_s.sh \"a b\" \"c\";EX=$?;"
        "rm -f /tmp/__sshtool_x_s.sh;exit $EX"
    )


def test_script_args_expand_target_variable():
    """A "$SSHTOOL_TARGET" argument stays expandable by the remote shell."""
    line = RemoteExecutor().script_command("__sshtool_x_s.sh", ["$SSHTOOL_TARGET"])

    assert '/tmp/__sshtool_x_s.sh "$SSHTOOL_TARGET";EX=$?' in line


@pytest.mark.parametrize(
    "arg, quoted",
    [
        ("plain", '"plain"'),
        ('say "hi"', '"say \\"hi\\""'),
        ("back\\slash", '"back\\\\slash"'),
        ("`reboot`", '"\\`reboot\\`"'),
        ("$HOME/x", '"$HOME/x"'),
    ],
)
def test_double_quote_escapes_only_what_the_shell_would_eat(arg, quoted):
    """Quotes, backslashes and backticks are escaped; variable references are not."""
    assert double_quote(arg) == quoted


@pytest.mark.asyncio
async def test_start_script_stages_and_runs(fake_transport):
    """start_script copies the script under a unique name, then runs it."""
    fake_transport.respond("alpha", stdout=b"script ran\n")
    executor = RemoteExecutor()

    async with asyncio.TaskGroup() as tg:
        execution = await executor.start_script(tg, Target(host="alpha"), "dir/s.sh", ["x"])
        output, errors = await _collect(execution)

    assert output == "script ran\n"
    assert errors == []

    (copy,) = fake_transport.scp_calls()
    staged = copy[-1].split(":", 1)[1]
    assert re.match(r"^/tmp/__sshtool_[^_]+_s\.sh$", staged)

    (run,) = fake_transport.ssh_calls()
    remote_line = run[-1]
    assert f'{staged} "x";EX=$?' in remote_line
    assert f"rm -f {shlex.quote(staged)}" in remote_line


@pytest.mark.asyncio
async def test_start_script_copy_failure(fake_transport):
    """If staging fails the script is never started."""
    fake_transport.scp_returncode = 1
    executor = RemoteExecutor()

    with pytest.raises(CopyError):
        await executor.start_script(None, Target(host="alpha"), "s.sh")

    assert fake_transport.ssh_calls() == []
