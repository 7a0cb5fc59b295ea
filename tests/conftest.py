"""Shared test fixtures for the sshtool test suite."""

import asyncio
import io
from dataclasses import dataclass

import pytest
from rich.console import Console


class FakeProcess:
    """Fake asyncio subprocess backed by real StreamReaders.

    Attributes:
        stdout: StreamReader fed with the configured stdout bytes.
        stderr: StreamReader fed with the configured stderr bytes.
        returncode: None until wait() or communicate() finished.
    """

    def __init__(
        self,
        stdout: bytes = b"",
        stderr: bytes = b"",
        returncode: int = 0,
        hang: bool = False,
    ):
        self._stdout_bytes = stdout
        self._stderr_bytes = stderr
        self._exit = returncode
        self._hang = hang
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        if stdout:
            self.stdout.feed_data(stdout)
        if stderr:
            self.stderr.feed_data(stderr)
        # Reason: a hanging process never reaches EOF, like a remote
        # command that is still running.
        if not hang:
            self.stdout.feed_eof()
            self.stderr.feed_eof()
        self.returncode = None

    async def wait(self) -> int:
        """Return the configured exit code, or block forever when hanging."""
        if self._hang:
            await asyncio.Event().wait()
        self.returncode = self._exit
        return self._exit

    async def communicate(self):
        """Return stored stdout and stderr."""
        self.returncode = self._exit
        return self._stdout_bytes, self._stderr_bytes


@dataclass
class Response:
    """Canned result of an ssh invocation on one host."""

    stdout: bytes = b""
    stderr: bytes = b""
    returncode: int = 0
    hang: bool = False


class FakeTransport:
    """Stand-in for asyncio.create_subprocess_exec that routes by host.

    ssh calls are recognised by the host before the remote command line
    (the last two arguments); scp calls by their "host:path" destination.
    Removal round trips ("rm -rf ...") always succeed.

    Attributes:
        calls: Positional args of every invocation, in order.
        responses: Host to canned ssh Response.
        unstartable: Hosts for which starting ssh raises FileNotFoundError.
        scp_returncode: Exit code of every scp invocation.
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.responses: dict[str, Response] = {}
        self.unstartable: set[str] = set()
        self.scp_returncode = 0

    def respond(self, host: str, **kwargs) -> None:
        """Register the ssh response for ``host``."""
        self.responses[host] = Response(**kwargs)

    def ssh_calls(self) -> list[tuple]:
        """Calls that ran a command through ssh (removals excluded)."""
        return [c for c in self.calls if c[0] != "scp" and "rm -rf" not in c[-1]]

    def scp_calls(self) -> list[tuple]:
        """Calls to scp."""
        return [c for c in self.calls if c[0] == "scp"]

    async def __call__(self, *args, **kwargs):
        self.calls.append(args)
        if args[0] == "scp":
            return FakeProcess(
                stderr=b"scp: failed\n" if self.scp_returncode else b"",
                returncode=self.scp_returncode,
            )
        host = args[-2]
        if host in self.unstartable:
            raise FileNotFoundError(2, "No such file or directory", args[0])
        if "rm -rf" in args[-1]:
            return FakeProcess()
        response = self.responses.get(host, Response())
        return FakeProcess(
            stdout=response.stdout,
            stderr=response.stderr,
            returncode=response.returncode,
            hang=response.hang,
        )


@pytest.fixture
def fake_transport(monkeypatch):
    """Patch asyncio.create_subprocess_exec with a FakeTransport.

    Returns:
        FakeTransport: The installed fake, for configuring and inspecting calls.
    """
    transport = FakeTransport()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", transport)
    return transport


@pytest.fixture
def console():
    """A rich Console writing into a StringIO (read with console.file.getvalue())."""
    return Console(file=io.StringIO(), width=200)


class StubPrompt:
    """Prompt that answers every question with a fixed value.

    Attributes:
        answer: The answer to give.
        questions: Messages asked so far.
    """

    def __init__(self, answer: bool):
        self.answer = answer
        self.questions: list[str] = []

    def confirm(self, message: str) -> bool:
        self.questions.append(message)
        return self.answer


@pytest.fixture
def stub_prompt():
    """Factory for StubPrompt instances."""
    return StubPrompt
