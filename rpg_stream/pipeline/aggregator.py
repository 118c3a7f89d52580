"""Block aggregation: parsed blocks → persistable message units.

One model turn is parsed once. While it streams in, the aggregator forwards
live progress for player-visible kinds; when it is finished, the blocks are
rendered back into tag form and adjacent blocks that share a channel are
merged:

    narrative, speech  → one ACTOR/visible unit   (joined with a blank line)
    log                → SYSTEM/hidden unit
    announce           → SYSTEM/visible unit

A unit never mixes visible and hidden content, because a stored message has
only one visibility flag.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from pydantic import BaseModel, Field

from rpg_stream.config import ChannelPolicy, DEFAULT_CHANNELS, channel_for, hidden_kinds
from rpg_stream.models import Block, BlockStart, MessageUnit, ProgressEvent, TagVocabulary

from .parser import TagStreamParser

logger = logging.getLogger(__name__)

UNIT_JOINER = "\n\n"
MISSING_NAME = "???"

ProgressCallback = Callable[[ProgressEvent], object]


# ---------------------------------------------------------------------------
# Rendering and merging
# ---------------------------------------------------------------------------

def render_block(block: Block, vocabulary: TagVocabulary) -> str:
    """Render a block with its configured tag spelling.

    Aliases in the input are normalised: a block parsed from any spelling is
    written back with the tag the vocabulary currently uses for its kind.
    """
    content = block.content.strip()
    cfg = vocabulary.get(block.kind)
    if cfg is None:
        return f"[{block.kind}]\n{content}"
    if cfg.parameterized:
        return f"[{cfg.tag}:{block.name or MISSING_NAME}]\n{content}"
    return f"[{cfg.tag}]\n{content}"


def merge_units(
    blocks: Iterable[Block],
    vocabulary: TagVocabulary,
    policy: ChannelPolicy | None = None,
) -> list[MessageUnit]:
    """Merge consecutive same-channel blocks, keeping parse order."""
    units: list[MessageUnit] = []
    for block in blocks:
        channel = channel_for(block.kind, policy)
        body = render_block(block, vocabulary)
        if units and units[-1].channel == channel:
            units[-1].body += UNIT_JOINER + body
        else:
            units.append(MessageUnit(
                message_kind=channel.message_kind, body=body, visible=channel.visible,
            ))
    return units


def combined_text(blocks: Iterable[Block], vocabulary: TagVocabulary) -> str:
    """The whole turn as one string, hidden blocks included, for side analysis."""
    return "".join(render_block(block, vocabulary) + "\n" for block in blocks)


# ---------------------------------------------------------------------------
# Single-pass aggregator
# ---------------------------------------------------------------------------

class AggregationResult(BaseModel):
    blocks: list[Block] = Field(default_factory=list)
    units: list[MessageUnit] = Field(default_factory=list)
    combined_text: str = ""


class BlockAggregator:
    """Parse one turn once, streaming live progress and buffering blocks.

    Args:
        vocabulary:  block kind → TagConfig.
        policy:      block kind → Channel. Defaults to DEFAULT_CHANNELS.
        on_progress: receives block:start / block:data events for every kind
                     whose channel is visible. Hidden kinds stay silent.

    Usage:
        agg = BlockAggregator(vocabulary, on_progress=push_to_ui)
        for chunk in stream:
            agg.feed(chunk)
        result = agg.finish()
    """

    def __init__(
        self,
        vocabulary: TagVocabulary,
        policy: ChannelPolicy | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._vocabulary = dict(vocabulary)
        self._policy = dict(policy) if policy is not None else dict(DEFAULT_CHANNELS)
        self._hidden = hidden_kinds(self._policy)
        self._on_progress = on_progress
        self._blocks: list[Block] = []
        self._content: list[str] = []
        self._current: BlockStart | None = None
        self._result: AggregationResult | None = None
        self._parser = TagStreamParser(
            self._vocabulary, on_start=self._handle_start, on_data=self._handle_data,
        )

    def feed(self, chunk: str) -> None:
        self._parser.feed(chunk)

    def finish(self) -> AggregationResult:
        """Close the stream and build the message units. Safe to call twice."""
        if self._result is not None:
            return self._result
        self._parser.close()
        self._flush_block()

        units = merge_units(self._blocks, self._vocabulary, self._policy)
        self._result = AggregationResult(
            blocks=self._blocks,
            units=units,
            combined_text=combined_text(self._blocks, self._vocabulary),
        )
        logger.debug(
            "Aggregated %d blocks into %d units (%d hidden)",
            len(self._blocks), len(units), sum(1 for u in units if not u.visible),
        )
        return self._result

    # -- parser callbacks --------------------------------------------------

    def _handle_start(self, start: BlockStart) -> None:
        self._flush_block()
        self._current = start
        if start.kind not in self._hidden:
            self._emit(ProgressEvent(event="block:start", kind=start.kind, name=start.name))

    def _handle_data(self, char: str) -> None:
        if self._current is None:
            return
        self._content.append(char)
        if self._current.kind not in self._hidden:
            self._emit(ProgressEvent(
                event="block:data", kind=self._current.kind,
                name=self._current.name, data=char,
            ))

    def _flush_block(self) -> None:
        if self._current is None:
            return
        self._blocks.append(Block(
            kind=self._current.kind, name=self._current.name, content="".join(self._content),
        ))
        self._current = None
        self._content = []

    def _emit(self, event: ProgressEvent) -> None:
        if self._on_progress is not None:
            self._on_progress(event)


def aggregate(
    text: Iterable[str] | str,
    vocabulary: TagVocabulary,
    policy: ChannelPolicy | None = None,
) -> AggregationResult:
    """Aggregate a complete turn (one string or its chunks)."""
    agg = BlockAggregator(vocabulary, policy)
    if isinstance(text, str):
        text = [text]
    for chunk in text:
        agg.feed(chunk)
    return agg.finish()


def materialize_blocks(text: Iterable[str] | str, vocabulary: TagVocabulary) -> list[Block]:
    """Parse a turn into blocks with their raw (untrimmed) content."""
    return aggregate(text, vocabulary).blocks


def replay_body(
    body: str,
    vocabulary: TagVocabulary,
    policy: ChannelPolicy | None = None,
    include_hidden: bool = False,
) -> list[Block]:
    """Re-parse a stored message body into trimmed blocks for display."""
    hidden = hidden_kinds(policy)
    blocks: list[Block] = []
    for block in materialize_blocks(body, vocabulary):
        if block.kind in hidden and not include_hidden:
            continue
        blocks.append(Block(kind=block.kind, name=block.name, content=block.content.strip()))
    return blocks
