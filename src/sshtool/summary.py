"""Summaries that group targets by identical result text."""

from collections.abc import Mapping
from typing import TYPE_CHECKING

from rich.console import Console

from sshtool.targets import Target

if TYPE_CHECKING:
    from sshtool.runner import RunContext

RULE = "-----------------------------------------------"
BEGIN = "---- BEGIN -----------------------------------"
END = "---- END --------------------------------------"
ERRORS_HEADER = "----------- ERRORS ---------------------------------------------------------"


def group_by_text(texts: Mapping[int, str], skip_empty: bool = False) -> dict[str, list[int]]:
    """Group target indices by exact text.

    Args:
        texts: Result text per target index.
        skip_empty: Leave targets with empty text out of every group.

    Returns:
        dict[str, list[int]]: Text to the ascending indices that produced it.
            Callers must not depend on the order of the groups.
    """
    groups: dict[str, list[int]] = {}
    for index in sorted(texts):
        text = texts[index]
        if skip_empty and not text:
            continue
        groups.setdefault(text, []).append(index)
    return groups


def _line(console: Console, text: str = "") -> None:
    # Reason: Console.out skips markup and wrapping, so remote text and host
    # names are written exactly as they are.
    console.out(text, highlight=False)


def print_summary(
    console: Console,
    heading: str,
    groups: Mapping[str, list[int]],
    targets: list[Target],
    grouped: bool = True,
) -> None:
    """Print one block per group (or per target when ``grouped`` is False).

    Args:
        console: Where to print.
        heading: Block title, e.g. "Output" or "ERROR".
        groups: Result of group_by_text.
        targets: All targets of the run, indexed like the groups.
        grouped: Print each distinct text once with all its targets.
    """
    if grouped:
        blocks = list(groups.items())
    else:
        blocks = [(text, [index]) for text, indices in groups.items() for index in indices]

    total = len(blocks)
    for number, (text, indices) in enumerate(blocks, start=1):
        _line(console, RULE)
        _line(console, f"-- {heading} {number} / {total} :")
        _line(console, BEGIN)
        if text:
            console.out(text, end="" if text.endswith("\n") else "\n", highlight=False)
        _line(console, END)
        _line(console, "For targets:")
        _line(console, " ".join(targets[index].name for index in indices))
    _line(console, RULE)


def report_results(console: Console, ctx: "RunContext", partial: bool = False) -> bool:
    """Print the output summary, then the error summary if there are errors.

    Only finished targets are reported; the records of targets still
    running are not read.

    Args:
        console: Where to print.
        ctx: State of the run.
        partial: Title the output blocks "Partial Output".

    Returns:
        bool: Whether any finished target has non-empty error text.
    """
    finished = [index for index, target in enumerate(ctx.targets) if target.done]

    outputs = {index: ctx.outputs[index] for index in finished}
    heading = "Partial Output" if partial else "Output"
    print_summary(console, heading, group_by_text(outputs), ctx.targets, ctx.group_output)

    errors = {index: ctx.errors[index] + "\n" for index in finished if ctx.errors[index]}
    if not errors:
        return False
    _line(console, ERRORS_HEADER)
    print_summary(console, "ERROR", group_by_text(errors), ctx.targets, ctx.group_output)
    return True
