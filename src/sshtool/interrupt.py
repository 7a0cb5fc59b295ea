"""Interactive handling of Ctrl-C during a run."""

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol

import typer
from rich.console import Console

from sshtool.summary import report_results
from sshtool.targets import Target

if TYPE_CHECKING:
    from sshtool.runner import RunContext

logger = logging.getLogger(__name__)


class Prompt(Protocol):
    """Asks the operator a yes/no question."""

    def confirm(self, message: str) -> bool:
        """Return True if the operator answered yes."""
        ...


class TyperPrompt:
    """Prompt on the terminal through typer.confirm."""

    def confirm(self, message: str) -> bool:
        try:
            return typer.confirm(message, default=False)
        except typer.Abort:
            # Reason: EOF on the terminal means "don't abort".
            return False


class InterruptHandler:
    """Reports pending targets and offers to stop waiting for them.

    Already started ssh processes are left alone: an abort only stops the
    run from waiting and prints what the finished targets produced.
    """

    def __init__(self, console: Console, prompt: Prompt | None = None):
        self.console = console
        self.prompt = prompt or TyperPrompt()

    @staticmethod
    def pending(ctx: "RunContext") -> list[Target]:
        """Targets whose results are not all collected yet."""
        return [target for target in ctx.targets if not target.done]

    async def handle(self, ctx: "RunContext") -> bool:
        """Handle one interrupt.

        Prints the pending targets and asks whether to abort. The question
        is asked from a worker thread, so targets keep being drained while
        the operator decides. Completions are only reported once the
        question is answered, and a further Ctrl-C while it is open does
        not cancel it.

        Args:
            ctx: State of the run.

        Returns:
            bool: True if the operator confirmed; the partial summary has
                been printed by then. False if the run should go on.
        """
        pending = self.pending(ctx)
        self.console.out(f"\n{len(pending)} pending jobs", highlight=False)
        for target in pending:
            self.console.out(target.name, highlight=False)

        confirmed = await asyncio.to_thread(self.prompt.confirm, "Abort?")
        if not confirmed:
            logger.debug("Abort declined, resuming")
            ctx.interrupted.clear()
            return False

        report_results(self.console, ctx, partial=True)
        return True
