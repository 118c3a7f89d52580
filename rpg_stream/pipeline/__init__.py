"""Streaming block pipeline.

Raw model output flows one way:

  chunks → TagStreamParser → BlockStart / BlockData events
         → BlockAggregator → live ProgressEvents (visible kinds only)
                           → MessageUnits (merged by channel) → storage
                           → combined text → side analysis

run_turn() wires a token stream, one aggregator and the storage together for
a single model turn.

Block format (tags are runtime configuration, these are the defaults):
  [narrative]            prose, shown to the player        ACTOR/visible
  [speech:<name>]        a line spoken by <name>           ACTOR/visible
  [event]                environment trigger (bgm:stop)    SYSTEM/hidden
  [log]                  internal reasoning                SYSTEM/hidden
  [announce]             system announcement               SYSTEM/visible
"""

from .aggregator import (  # noqa: F401
    AggregationResult,
    BlockAggregator,
    aggregate,
    combined_text,
    materialize_blocks,
    merge_units,
    render_block,
    replay_body,
)
from .orchestrator import TurnResult, run_turn  # noqa: F401
from .parser import (  # noqa: F401
    ParserClosedError,
    ParserState,
    TagStreamParser,
    TagTable,
    parse_events,
)
