"""Line-based marker protocol between the control loop and its supervisor.

A marker is a whole output line of the form ``@@TAG:payload@@`` where the tag is
made of uppercase letters and underscores. Every other line is free-text log
output. Markers are classified syntactically first (``match_marker``) and then
decoded into typed events (``decode_marker``); a syntactically valid marker with
an unknown tag or a malformed payload raises ``MarkerParseAnomaly``.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from clanker_spanker.errors import MarkerParseAnomaly
from clanker_spanker.models import CiStatus, FixKind, LoopOutcome

MARKER_PATTERN = re.compile(r"^@@(?P<tag>[A-Z_]+):(?P<payload>.+)@@$")


class MarkerTag(StrEnum):
    """Tags understood by the supervisor."""

    ITERATION = "ITERATION"
    CI_STATUS = "CI_STATUS"
    CI_WAIT = "CI_WAIT"
    COMMENTS_FOUND = "COMMENTS_FOUND"
    SLEEPING = "SLEEPING"
    STATUS = "STATUS"
    FIX_STARTED = "FIX_STARTED"
    FIX_DONE = "FIX_DONE"


@dataclass(frozen=True)
class Marker:
    """A syntactically valid marker line."""

    tag: str
    payload: str

    def pair(self) -> tuple[str, str] | None:
        """Split a ``left/right`` payload, or return None if it has no slash."""
        left, sep, right = self.payload.partition("/")
        if not sep:
            return None
        return left, right

    def __str__(self) -> str:
        """Return the wire form of the marker."""
        return f"@@{self.tag}:{self.payload}@@"


@dataclass(frozen=True)
class IterationStarted:
    """``@@ITERATION:n/max@@``."""

    iteration: int
    max_iterations: int


@dataclass(frozen=True)
class CiStatusReported:
    """``@@CI_STATUS:success|failure|pending@@``."""

    status: CiStatus


@dataclass(frozen=True)
class CiWaiting:
    """``@@CI_WAIT:k/maxWaits@@``."""

    wait: int
    max_waits: int


@dataclass(frozen=True)
class CommentsFound:
    """``@@COMMENTS_FOUND:count@@``."""

    count: int


@dataclass(frozen=True)
class SleepingStarted:
    """``@@SLEEPING:minutes@@``."""

    minutes: int


@dataclass(frozen=True)
class TerminalStatus:
    """``@@STATUS:clean|max_iterations@@``."""

    outcome: LoopOutcome


@dataclass(frozen=True)
class FixStarted:
    """``@@FIX_STARTED:ci|comments@@``."""

    kind: FixKind


@dataclass(frozen=True)
class FixFinished:
    """``@@FIX_DONE:ci|comments@@``."""

    kind: FixKind


type MarkerEvent = (
    IterationStarted
    | CiStatusReported
    | CiWaiting
    | CommentsFound
    | SleepingStarted
    | TerminalStatus
    | FixStarted
    | FixFinished
)


def match_marker(line: str) -> Marker | None:
    """Classify a line as a marker or free text.

    Only a full-line match counts: text before or after the marker makes the
    whole line free text.

    Args:
        line: One output line without its trailing newline

    Returns:
        Marker if the line is marker-shaped, None otherwise

    """
    match = MARKER_PATTERN.match(line)
    if match is None:
        return None
    return Marker(tag=match["tag"], payload=match["payload"])


def _parse_count(marker: Marker, value: str) -> int:
    try:
        count = int(value)
    except ValueError:
        raise MarkerParseAnomaly(str(marker), f"Non-numeric {marker.tag} payload") from None
    if count < 0:
        raise MarkerParseAnomaly(str(marker), f"Negative {marker.tag} payload")
    return count


def _parse_fraction(marker: Marker) -> tuple[int, int]:
    pair = marker.pair()
    if pair is None:
        raise MarkerParseAnomaly(str(marker), f"{marker.tag} payload must be 'n/max'")
    return _parse_count(marker, pair[0]), _parse_count(marker, pair[1])


def _parse_choice[E: StrEnum](marker: Marker, enum_type: type[E]) -> E:
    try:
        return enum_type(marker.payload)
    except ValueError:
        raise MarkerParseAnomaly(
            str(marker),
            f"Unknown {marker.tag} value '{marker.payload}'",
        ) from None


def _decode_iteration(marker: Marker) -> IterationStarted:
    iteration, max_iterations = _parse_fraction(marker)
    return IterationStarted(iteration=iteration, max_iterations=max_iterations)


def _decode_ci_wait(marker: Marker) -> CiWaiting:
    wait, max_waits = _parse_fraction(marker)
    return CiWaiting(wait=wait, max_waits=max_waits)


_DECODERS: dict[str, Callable[[Marker], MarkerEvent]] = {
    MarkerTag.ITERATION: _decode_iteration,
    MarkerTag.CI_STATUS: lambda m: CiStatusReported(_parse_choice(m, CiStatus)),
    MarkerTag.CI_WAIT: _decode_ci_wait,
    MarkerTag.COMMENTS_FOUND: lambda m: CommentsFound(_parse_count(m, m.payload)),
    MarkerTag.SLEEPING: lambda m: SleepingStarted(_parse_count(m, m.payload)),
    MarkerTag.STATUS: lambda m: TerminalStatus(_parse_choice(m, LoopOutcome)),
    MarkerTag.FIX_STARTED: lambda m: FixStarted(_parse_choice(m, FixKind)),
    MarkerTag.FIX_DONE: lambda m: FixFinished(_parse_choice(m, FixKind)),
}


def decode_marker(marker: Marker) -> MarkerEvent:
    """Decode a marker into a typed event.

    Args:
        marker: Marker returned by ``match_marker``

    Returns:
        The typed event for the marker tag

    Raises:
        MarkerParseAnomaly: If the tag is unknown or the payload is malformed

    """
    decoder = _DECODERS.get(marker.tag)
    if decoder is None:
        raise MarkerParseAnomaly(str(marker), f"Unknown marker tag '{marker.tag}'")
    return decoder(marker)


def parse_line(line: str) -> MarkerEvent | None:
    """Classify and decode a line in one step.

    Returns:
        Typed event, or None for free text

    Raises:
        MarkerParseAnomaly: If the line is marker-shaped but not decodable

    """
    marker = match_marker(line)
    if marker is None:
        return None
    return decode_marker(marker)


def format_marker(tag: MarkerTag, payload: object) -> str:
    """Build the wire form of a marker."""
    return f"@@{tag}:{payload}@@"
