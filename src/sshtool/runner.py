"""Run coordination: one task per target, result collection, final report."""

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from rich.console import Console

from sshtool.capture import CaptureStore
from sshtool.channels import Channel
from sshtool.errors import CaptureError, RemoteError
from sshtool.interrupt import InterruptHandler, Prompt
from sshtool.request import ExecutionRequest
from sshtool.ssh import TARGET_ENV_VAR, RemoteExecutor
from sshtool.summary import report_results
from sshtool.targets import Target

logger = logging.getLogger(__name__)

WRITE_ERROR_NOTE = "SSHTOOL: ERROR writing to temp file: {}"


class RunResult(Enum):
    """How a run ended. The value is the process exit status."""

    SUCCESS = 0
    PARTIAL_FAILURE = 1
    CONFIG_ERROR = 2
    SETUP_ERROR = 10
    CLEANUP_ERROR = 20
    CAPTURE_ERROR = 30
    ABORTED = 100

    @property
    def exit_code(self) -> int:
        """Process exit status for this result."""
        return self.value


@dataclass
class RunContext:
    """State of one run, shared by the coordinator, interrupt handler and summary.

    ``outputs[i]`` and ``errors[i]`` are assigned once, by target i's own
    task, immediately before ``targets[i].done`` is set. Nobody reads them
    for a target that is not done.

    Attributes:
        targets: Targets of the run, in input order.
        capture: Raw output capture, or None to skip it.
        substitute_target: Replace each target's host in its own results
            with "$SSHTOOL_TARGET".
        group_output: Group identical results in the summary.
        outputs: Combined stdout/stderr text per finished target.
        errors: Error text per finished target.
        completions: Indices of targets as they finish.
        interrupted: Set when the operator hits Ctrl-C.
    """

    targets: list[Target]
    capture: CaptureStore | None = None
    substitute_target: bool = True
    group_output: bool = True
    outputs: dict[int, str] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)
    completions: asyncio.Queue = field(default_factory=asyncio.Queue)
    interrupted: asyncio.Event = field(default_factory=asyncio.Event)


async def _drain_output(ctx: RunContext, index: int, channel: Channel[str]) -> str:
    parts: list[str] = []
    async for chunk in channel:
        parts.append(chunk)
        if ctx.capture is None:
            continue
        try:
            ctx.capture.write(index, chunk)
        except OSError as exc:
            parts.append(WRITE_ERROR_NOTE.format(exc))
    return "".join(parts)


async def _drain_errors(channel: Channel[BaseException]) -> str:
    return "\n".join(str(exc) for exc in await channel.drain())


async def _execute_target(
    ctx: RunContext,
    executor: RemoteExecutor,
    request: ExecutionRequest,
    index: int,
    console: Console,
) -> tuple[str, str]:
    """Copy, start and drain one target. Returns (output, error text)."""
    target = ctx.targets[index]
    total = len(ctx.targets)

    if request.copy_source is not None:
        destination = executor.copy_destination(request.copy_source)
        await executor.copy(target, request.copy_source, destination)
    if request.copy_only:
        console.out(f"Copied {index + 1} / {total}", highlight=False)
        return "", ""

    async with asyncio.TaskGroup() as tg:
        # Reason: errors raised in a TaskGroup body surface as an
        # ExceptionGroup, so start failures are turned into results here.
        # Nothing has been spawned on tg when they happen.
        try:
            if request.script is not None:
                execution = await executor.start_script(
                    tg, target, request.script, request.script_args
                )
            else:
                execution = await executor.start(tg, target, request.command)
        except RemoteError as exc:
            logger.debug("Target %s did not start: %s", target.name, exc)
            return "", str(exc)
        console.out(f"Started {index + 1} / {total}", highlight=False)

        # Reason: both channels must be read at the same time; the reader
        # tasks block until their items are taken.
        output, errors = await asyncio.gather(
            _drain_output(ctx, index, execution.output),
            _drain_errors(execution.errors),
        )
    return output, errors


async def _run_target(
    ctx: RunContext,
    executor: RemoteExecutor,
    request: ExecutionRequest,
    index: int,
    console: Console,
) -> None:
    target = ctx.targets[index]
    try:
        output, errors = await _execute_target(ctx, executor, request, index, console)
    except RemoteError as exc:
        logger.debug("Target %s failed before draining: %s", target.name, exc)
        output, errors = "", str(exc)

    if ctx.substitute_target:
        placeholder = f'"${TARGET_ENV_VAR}"'
        output = output.replace(target.host, placeholder)
        errors = errors.replace(target.host, placeholder)

    ctx.outputs[index] = output
    ctx.errors[index] = errors
    target.mark_done()
    ctx.completions.put_nowait(index)


async def _next_completion(ctx: RunContext) -> int | None:
    """Wait for the next finished target, or None if interrupted first."""
    if ctx.interrupted.is_set():
        return None
    completion = asyncio.create_task(ctx.completions.get())
    interrupted = asyncio.create_task(ctx.interrupted.wait())
    done, pending = await asyncio.wait(
        {completion, interrupted}, return_when=asyncio.FIRST_COMPLETED
    )
    for task in pending:
        task.cancel()
    if completion in done:
        return completion.result()
    return None


async def run(
    ctx: RunContext,
    executor: RemoteExecutor,
    request: ExecutionRequest,
    console: Console,
    handler: InterruptHandler | None = None,
) -> RunResult:
    """Run ``request`` on every target of ``ctx`` and collect the results.

    Targets run concurrently; progress is printed in the order they finish.
    When ``ctx.interrupted`` is set, ``handler`` decides whether to stop
    waiting. On an abort the unfinished target tasks are cancelled.
    Completions that arrive while the handler is asking are reported once
    it has answered.

    Args:
        ctx: State of the run.
        executor: Transport for the targets.
        request: What to do on each target.
        console: Where to print progress.
        handler: Interrupt handler; without one interrupts are ignored.

    Returns:
        RunResult: ABORTED if the operator aborted, PARTIAL_FAILURE if any
            target reported errors, SUCCESS otherwise.
    """
    total = len(ctx.targets)
    console.out(f"Start ssh for {total} machines", highlight=False)

    async with asyncio.TaskGroup() as tg:
        tasks = [
            tg.create_task(_run_target(ctx, executor, request, index, console))
            for index in range(total)
        ]

        finished = 0
        while finished < total:
            index = await _next_completion(ctx)
            if index is None:
                if handler is not None and await handler.handle(ctx):
                    for task in tasks:
                        task.cancel()
                    return RunResult.ABORTED
                ctx.interrupted.clear()
                continue
            finished += 1
            console.out(
                f"    Done {finished} / {total}        Machine {ctx.targets[index].name}",
                highlight=False,
            )

    if any(ctx.errors[index] for index in range(total)):
        return RunResult.PARTIAL_FAILURE
    return RunResult.SUCCESS


@contextlib.contextmanager
def interrupt_on_sigint(event: asyncio.Event):
    """Set ``event`` on SIGINT instead of raising KeyboardInterrupt."""
    loop = asyncio.get_running_loop()
    installed = True
    try:
        loop.add_signal_handler(signal.SIGINT, event.set)
    except (NotImplementedError, RuntimeError, ValueError):
        # Reason: only the main thread of a Unix process can install it.
        installed = False
        logger.debug("SIGINT handler not installed")
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def execute(
    targets: list[Target],
    request: ExecutionRequest,
    executor: RemoteExecutor,
    console: Console,
    *,
    substitute_target: bool = True,
    group_output: bool = True,
    prompt: Prompt | None = None,
    capture_dir: Path | None = None,
) -> RunResult:
    """Top-level run: capture setup, execution, summary, cleanup.

    Args:
        targets: Targets to run on.
        request: What to do on each target.
        executor: Transport for the targets.
        console: Where to print progress and summaries.
        substitute_target: See RunContext.
        group_output: See RunContext.
        prompt: Asks for confirmation on Ctrl-C. Defaults to the terminal.
        capture_dir: Parent of the capture directory. Defaults to the
            system temporary directory.

    Returns:
        RunResult: How the run ended.
    """
    try:
        capture = CaptureStore.create(capture_dir)
    except CaptureError as exc:
        console.out(f"Error creating temporary directory: {exc}", highlight=False)
        return RunResult.SETUP_ERROR

    ctx = RunContext(
        targets=targets,
        capture=capture,
        substitute_target=substitute_target,
        group_output=group_output,
    )

    try:
        capture.open(targets)
    except CaptureError as exc:
        console.out(f"ERROR: {exc}", highlight=False)
        result = RunResult.CAPTURE_ERROR
    else:
        handler = InterruptHandler(console, prompt)
        with interrupt_on_sigint(ctx.interrupted):
            result = await run(ctx, executor, request, console, handler)
        if result is not RunResult.ABORTED:
            report_results(console, ctx)

    try:
        capture.remove()
    except CaptureError as exc:
        console.out(str(exc), highlight=False)
        return RunResult.CLEANUP_ERROR

    if result is RunResult.PARTIAL_FAILURE:
        console.out("Finished with errors", highlight=False)
    elif result is RunResult.SUCCESS:
        console.out("End!", highlight=False)
    return result
