"""Turn orchestrator: runs one model turn end-to-end.

Turn flow:
  1. Open the token stream for the prompt.
  2. Feed every chunk to a fresh BlockAggregator; forward live progress for
     visible kinds to the caller's sink as it arrives.
  3. Finish the aggregation → blocks, merged MessageUnits, combined text.
  4. Number the units and persist them as one turn.
  5. Hand the combined text (hidden blocks included) to the side analysis.

If the stream fails, the error propagates and nothing is persisted. Retrying
means calling run_turn() again; every call gets its own parser state.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, Field

from rpg_stream.config import ChannelPolicy
from rpg_stream.llm import TokenStream
from rpg_stream.models import Block, ProgressEvent, StoredMessage, TagVocabulary
from rpg_stream.storage import MessageSink, to_stored_messages

from .aggregator import BlockAggregator

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressEvent], Awaitable[None] | None]
Analyzer = Callable[[str], Awaitable[None]]

RESPONSE_STAGE = "response"


class TurnResult(BaseModel):
    messages: list[StoredMessage] = Field(default_factory=list)
    combined_text: str = ""
    blocks: list[Block] = Field(default_factory=list)


async def run_turn(
    *,
    storage: MessageSink,
    conversation_id: str,
    prompt: str,
    llm: TokenStream,
    vocabulary: TagVocabulary,
    policy: ChannelPolicy | None = None,
    owner: str | None = None,
    on_progress: ProgressSink | None = None,
    analyze: Analyzer | None = None,
) -> TurnResult:
    """Stream one model turn, persist its messages and return the result."""

    pending: list[ProgressEvent] = []
    aggregator = BlockAggregator(
        vocabulary, policy, on_progress=pending.append if on_progress else None,
    )

    # 1–2. Stream
    chunks = 0
    async for chunk in llm(RESPONSE_STAGE, prompt):
        chunks += 1
        aggregator.feed(chunk)
        if pending:
            await _forward(pending, on_progress)

    # 3. Aggregate
    result = aggregator.finish()
    logger.debug(
        "turn conversation=%s chunks=%d blocks=%d units=%d",
        conversation_id, chunks, len(result.blocks), len(result.units),
    )

    # 4. Persist
    turn_id = storage.next_turn_id(conversation_id)
    messages = to_stored_messages(
        result.units, turn_id, start_seq=storage.last_seq(conversation_id), owner=owner,
    )
    if messages:
        storage.append_messages(conversation_id, messages)
    else:
        logger.warning("turn conversation=%s produced no blocks; nothing stored", conversation_id)

    # 5. Side analysis
    if analyze is not None:
        await analyze(result.combined_text)

    return TurnResult(messages=messages, combined_text=result.combined_text, blocks=result.blocks)


async def _forward(pending: list[ProgressEvent], sink: ProgressSink | None) -> None:
    events = list(pending)
    pending.clear()
    if sink is None:
        return
    for event in events:
        outcome = sink(event)
        if inspect.isawaitable(outcome):
            await outcome
