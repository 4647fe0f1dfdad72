"""
Incremental parser for git-svn clone/fetch output.

git-svn reports every imported revision as

    r42 = 3f1c9a... (refs/remotes/origin/trunk)

Output arrives in arbitrary chunks, so lines are reassembled before
matching. Unrecognized lines are passed through as LOG events.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional

REVISION_RE = re.compile(r"^r(\d+)\s*=\s*([0-9a-f]*)")
CHECKOUT_RE = re.compile(r"^Checked out HEAD:|^checking out", re.IGNORECASE)
INITIALIZED_RE = re.compile(r"^Initialized empty Git repository", re.IGNORECASE)


class EventKind(str, Enum):
    REVISION = "revision"
    CHECKOUT = "checkout"
    INITIALIZED = "initialized"
    LOG = "log"


@dataclass(frozen=True)
class ProgressEvent:
    kind: EventKind
    raw_line: str
    revision: Optional[int] = None
    commit: Optional[str] = None

    @property
    def is_new_commit(self) -> bool:
        return self.kind is EventKind.REVISION


class LineBuffer:
    """
    Splits a stream of text chunks into complete lines.

    Holds at most one partial line between feeds; a trailing carriage
    return (git progress output) is treated as a line break.
    """

    def __init__(self):
        self._pending = ""

    def feed(self, chunk: str) -> List[str]:
        if not chunk:
            return []
        data = self._pending + chunk.replace("\r\n", "\n").replace("\r", "\n")
        *lines, self._pending = data.split("\n")
        return lines

    def flush(self) -> List[str]:
        """Return the trailing partial line, if any."""
        rest, self._pending = self._pending, ""
        return [rest] if rest else []


class RevisionProgressParser:
    """
    Stateful git-svn output parser.

    Usage:
        parser = RevisionProgressParser()
        for event in parser.feed(chunk):
            ...
        for event in parser.flush():
            ...
    """

    def __init__(self):
        self._buffer = LineBuffer()
        self.highest_revision: Optional[int] = None
        self.revision_count = 0

    def feed(self, chunk: str) -> Iterator[ProgressEvent]:
        for line in self._buffer.feed(chunk):
            event = self.parse_line(line)
            if event is not None:
                yield event

    def flush(self) -> Iterator[ProgressEvent]:
        for line in self._buffer.flush():
            event = self.parse_line(line)
            if event is not None:
                yield event

    def parse_line(self, line: str) -> Optional[ProgressEvent]:
        """Classify one complete line. Blank lines yield nothing."""
        text = line.strip()
        if not text:
            return None

        match = REVISION_RE.match(text)
        if match:
            revision = int(match.group(1))
            self.revision_count += 1
            if self.highest_revision is None or revision > self.highest_revision:
                self.highest_revision = revision
            return ProgressEvent(
                kind=EventKind.REVISION,
                raw_line=text,
                revision=revision,
                commit=match.group(2) or None,
            )

        if CHECKOUT_RE.match(text):
            return ProgressEvent(kind=EventKind.CHECKOUT, raw_line=text)
        if INITIALIZED_RE.match(text):
            return ProgressEvent(kind=EventKind.INITIALIZED, raw_line=text)
        return ProgressEvent(kind=EventKind.LOG, raw_line=text)
