"""Incremental tag stream parser.

Turns raw model output, arriving in chunks split at arbitrary points, into
an ordered stream of block events:

    [narrative]
    The tavern falls silent.
    [speech:Aria]
    Who goes there?

yields BlockStart(narrative), the narration characters as BlockData,
BlockStart(speech, name="Aria"), then the spoken characters.

States:
  WAITING_TAG      → discard everything until the first "[".
  READING_TAG      → buffer the tag text until "]", then emit BlockStart.
  SKIP_NEWLINE     → swallow the one newline that follows a tag line.
  READING_CONTENT  → every character is BlockData until the next "[".

There is no end event: a block ends at the next BlockStart or at the end of
input. Malformed input never raises; unrecognised tags resolve to "unknown".
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from enum import Enum

from rpg_stream.config import UNKNOWN
from rpg_stream.models import BlockData, BlockStart, ParserEvent, TagConfigError, TagVocabulary

logger = logging.getLogger(__name__)

TAG_OPEN = "["
TAG_CLOSE = "]"
NAME_SEPARATOR = ":"


class ParserState(Enum):
    WAITING_TAG = "WAITING_TAG"
    READING_TAG = "READING_TAG"
    SKIP_NEWLINE = "SKIP_NEWLINE"
    READING_CONTENT = "READING_CONTENT"


class ParserClosedError(RuntimeError):
    """Raised when a parser is fed after close()."""


# ---------------------------------------------------------------------------
# Tag table: the vocabulary compiled once per parser
# ---------------------------------------------------------------------------

class TagTable:
    """Immutable lookup from bracket contents to (kind, name).

    Plain tags resolve through an exact-match dict. Parameterized tags are
    tried as prefixes, longest first, so ``speech:aside:`` wins over
    ``speech:`` regardless of vocabulary order.

    Raises TagConfigError for an empty kind or the reserved kind "unknown".
    """

    __slots__ = ("_exact", "_prefixes")

    def __init__(self, vocabulary: TagVocabulary) -> None:
        exact: dict[str, str] = {}
        prefixes: list[tuple[str, str]] = []
        for kind, cfg in vocabulary.items():
            if not kind.strip():
                raise TagConfigError("block kind must not be empty")
            if kind == UNKNOWN:
                raise TagConfigError(f"{UNKNOWN!r} is reserved for unrecognised tags")
            lowered = cfg.tag.lower()
            if cfg.parameterized:
                prefixes.append((lowered + NAME_SEPARATOR, kind))
            else:
                exact.setdefault(lowered, kind)
        # sorted() is stable, so equal-length prefixes keep vocabulary order
        self._exact = exact
        self._prefixes = tuple(sorted(prefixes, key=lambda p: len(p[0]), reverse=True))

    def resolve(self, raw_tag: str) -> BlockStart:
        lowered = raw_tag.lower().strip()

        kind = self._exact.get(lowered)
        if kind is not None:
            return BlockStart(kind=kind, original_tag=raw_tag)

        for prefix, kind in self._prefixes:
            if lowered.startswith(prefix):
                # Name keeps its casing, so slice the raw buffer, not the lowered copy
                _, _, name = raw_tag.partition(NAME_SEPARATOR)
                return BlockStart(kind=kind, name=name.strip(), original_tag=raw_tag)

        logger.debug("Unrecognised tag %r", raw_tag)
        return BlockStart(kind=UNKNOWN, original_tag=raw_tag)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

StartCallback = Callable[[BlockStart], None]
DataCallback = Callable[[str], None]


class TagStreamParser:
    """Character-level state machine over a chunked text stream.

    Args:
        vocabulary: block kind → TagConfig. Compiled once; later changes to
                    the mapping do not affect this parser.
        on_start:   called with each BlockStart.
        on_data:    called with each content character, in order.

    One parser serves one model turn. It keeps only what it needs to resume
    at the next chunk boundary: the state, and the partial tag text.
    """

    def __init__(
        self,
        vocabulary: TagVocabulary,
        on_start: StartCallback | None = None,
        on_data: DataCallback | None = None,
    ) -> None:
        self._table = TagTable(vocabulary)
        self._on_start = on_start
        self._on_data = on_data
        self._state = ParserState.WAITING_TAG
        self._tag_buffer: list[str] = []
        self._discarded = 0
        self._closed = False

    @property
    def state(self) -> ParserState:
        return self._state

    def feed(self, chunk: str) -> None:
        """Consume one chunk; callbacks fire synchronously before this returns."""
        if self._closed:
            raise ParserClosedError("Cannot feed a closed parser")
        for char in chunk:
            self._step(char)

    def close(self) -> None:
        """Mark end of input. A tag still being read is dropped."""
        if self._closed:
            return
        self._closed = True
        if self._state is ParserState.READING_TAG:
            logger.warning(
                "Stream ended inside a tag; dropped %d buffered chars: %r",
                len(self._tag_buffer), "".join(self._tag_buffer),
            )
        if self._discarded:
            logger.debug("Discarded %d chars before the first tag", self._discarded)

    def _step(self, char: str) -> None:
        state = self._state

        if state is ParserState.READING_CONTENT:
            if char == TAG_OPEN:
                self._begin_tag()
            else:
                self._emit_data(char)

        elif state is ParserState.READING_TAG:
            if char == TAG_CLOSE:
                self._end_tag()
            else:
                self._tag_buffer.append(char)

        elif state is ParserState.SKIP_NEWLINE:
            if char == "\r":
                pass  # stay; a following "\n" is still swallowed
            elif char == "\n":
                self._state = ParserState.READING_CONTENT
            elif char == TAG_OPEN:
                self._begin_tag()
            else:
                self._state = ParserState.READING_CONTENT
                self._emit_data(char)

        else:  # WAITING_TAG
            if char == TAG_OPEN:
                self._begin_tag()
            else:
                self._discarded += 1

    def _begin_tag(self) -> None:
        self._state = ParserState.READING_TAG
        self._tag_buffer = []

    def _end_tag(self) -> None:
        block = self._table.resolve("".join(self._tag_buffer))
        self._tag_buffer = []
        self._state = ParserState.SKIP_NEWLINE
        if self._on_start is not None:
            self._on_start(block)

    def _emit_data(self, char: str) -> None:
        if self._on_data is not None:
            self._on_data(char)


def parse_events(chunks: Iterable[str] | str, vocabulary: TagVocabulary) -> list[ParserEvent]:
    """Run a fresh parser over ``chunks`` and collect every event in order."""
    events: list[ParserEvent] = []
    parser = TagStreamParser(
        vocabulary,
        on_start=events.append,
        on_data=lambda char: events.append(BlockData(data=char)),
    )
    if isinstance(chunks, str):
        chunks = [chunks]
    for chunk in chunks:
        parser.feed(chunk)
    parser.close()
    return events
