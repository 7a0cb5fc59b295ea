"""Target list loading: inline host lists, plain host files, and ssh config files."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from sshtool.errors import TargetListError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22

# Fields of a record are separated by whitespace or colons: "host", "host 2222", "host:2222".
FIELD_SEPARATOR = re.compile(r"[\s:]+")

HOST_DIRECTIVE = re.compile(r"^\s*host\s+(.*)$", re.IGNORECASE)


@dataclass
class Target:
    """A single remote host to run the request against.

    Attributes:
        host: Host name or ssh alias, passed to ssh as is.
        port: Explicit port, or None to leave it to ssh (and its config).
        done: Set once, when every result of this target has been collected.
    """

    host: str
    port: int | None = None
    done: bool = False

    @property
    def name(self) -> str:
        """Identity of the target: host, plus port when one was given."""
        if self.port is None:
            return self.host
        return f"{self.host}:{self.port}"

    @property
    def effective_port(self) -> int:
        """Port ssh will connect to when none is configured elsewhere."""
        return DEFAULT_PORT if self.port is None else self.port

    def mark_done(self) -> None:
        """Flip ``done`` to True.

        Raises:
            RuntimeError: If the target was already done.
        """
        if self.done:
            raise RuntimeError(f"target {self.name} finished twice")
        self.done = True


def parse_record(line: str, line_number: int) -> Target:
    """Parse one "host" or "host port" record.

    Args:
        line: Record text, already stripped.
        line_number: 1-based position, used in error messages.

    Returns:
        Target: The parsed target.

    Raises:
        TargetListError: On a wrong field count or an invalid port.
    """
    fields = FIELD_SEPARATOR.split(line)
    if len(fields) == 1:
        return Target(host=fields[0])
    if len(fields) == 2:
        host, raw_port = fields
        try:
            port = int(raw_port)
        except ValueError:
            raise TargetListError(
                f"line {line_number}: invalid port {raw_port!r}: {line}"
            ) from None
        if not 0 < port < 65536:
            raise TargetListError(f"line {line_number}: port out of range: {line}")
        return Target(host=host, port=port)
    raise TargetListError(
        f"line {line_number}: expected host or host port, "
        f"found {len(fields)} fields instead: {line}"
    )


def parse_records(lines: list[str]) -> list[Target]:
    """Parse plain records, skipping blank lines and ``#`` comments.

    Args:
        lines: Raw lines (or comma-separated entries).

    Returns:
        list[Target]: Targets in input order.

    Raises:
        TargetListError: If any record is malformed.
    """
    targets: list[Target] = []
    for line_number, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        targets.append(parse_record(stripped, line_number))
    return targets


def is_ssh_config(lines: list[str]) -> bool:
    """Whether any line is an ssh-config ``Host`` directive."""
    return any(HOST_DIRECTIVE.match(line) for line in lines)


def parse_ssh_config(lines: list[str]) -> list[Target]:
    """Collect the hosts named by ``Host`` directives of an ssh config file.

    Multi-host lines like "Host foo bar" yield one target per name. Wildcard
    patterns (containing *, ? or !) are skipped; every other directive is
    left to ssh itself.

    Args:
        lines: Lines of the ssh config file.

    Returns:
        list[Target]: Targets in file order.
    """
    targets: list[Target] = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = HOST_DIRECTIVE.match(stripped)
        if not match:
            continue
        for entry in match.group(1).split():
            if any(c in entry for c in ("*", "?", "!")):
                continue
            targets.append(Target(host=entry))
    return targets


def load_targets(source: str) -> list[Target]:
    """Load targets from a file path or an inline comma-separated list.

    If ``source`` names an existing file it is read: a file containing ssh
    ``Host`` directives is treated as an ssh config, anything else as one
    record per line. Otherwise ``source`` itself is split on commas.

    Args:
        source: Path to a targets file, or "host1,host2:2222,...".

    Returns:
        list[Target]: The targets, in order.

    Raises:
        TargetListError: If a record is malformed, the file is unreadable,
            or no target is found.
    """
    path = Path(source).expanduser()
    if path.is_file():
        logger.debug("Loading targets from file %s", path)
        try:
            lines = path.read_text().splitlines()
        except (OSError, UnicodeDecodeError) as exc:
            raise TargetListError(f"cannot read targets file {path}: {exc}") from exc
        if is_ssh_config(lines):
            targets = parse_ssh_config(lines)
        else:
            targets = parse_records(lines)
    else:
        logger.debug("Loading targets from inline list %r", source)
        targets = parse_records(source.split(","))

    if not targets:
        raise TargetListError(f"no targets found in {source!r}")
    return targets
