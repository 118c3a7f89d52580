"""JSON file storage for finished conversation messages.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM; reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      conversations/
        {conversation_id}/
          messages.json       ← append-only StoredMessage stream

The core hands over ordered MessageUnits; this layer assigns the storage
identity (turn id, sequence number, owning entity).
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

from rpg_stream.models import MessageUnit, StoredMessage

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class MessageSink(Protocol):
    """Anything that can persist a turn's messages."""

    def next_turn_id(self, conversation_id: str) -> int: ...

    def last_seq(self, conversation_id: str) -> int: ...

    def append_messages(self, conversation_id: str, messages: list[StoredMessage]) -> None: ...


def to_stored_messages(
    units: Iterable[MessageUnit],
    turn_id: int,
    start_seq: int = 0,
    owner: str | None = None,
) -> list[StoredMessage]:
    """Number units in order. Only ACTOR messages are attributed to ``owner``."""
    stored: list[StoredMessage] = []
    for offset, unit in enumerate(units, start=1):
        stored.append(StoredMessage(
            turn_id=turn_id,
            seq=start_seq + offset,
            message_kind=unit.message_kind,
            owner=owner if unit.message_kind == "ACTOR" else None,
            body=unit.body,
            visible=unit.visible,
        ))
    return stored


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._conv_root = base_path / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _conv_dir(self, conversation_id: str) -> Path:
        if not _SAFE_ID.match(conversation_id):
            raise ValueError(f"Invalid conversation id {conversation_id!r}")
        return self._conv_root / conversation_id

    def _messages_file(self, conversation_id: str) -> Path:
        return self._conv_dir(conversation_id) / "messages.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # Messages (append-only)
    # ------------------------------------------------------------------

    def get_messages(
        self, conversation_id: str, include_hidden: bool = True
    ) -> list[StoredMessage]:
        path = self._messages_file(conversation_id)
        if not path.exists():
            return []
        messages = [StoredMessage.model_validate(m) for m in self._read_json(path)]
        if not include_hidden:
            messages = [m for m in messages if m.visible]
        return messages

    def append_messages(self, conversation_id: str, messages: list[StoredMessage]) -> None:
        existing = self.get_messages(conversation_id)
        existing.extend(messages)
        self._write_json(
            self._messages_file(conversation_id),
            [m.model_dump() for m in existing],
        )

    def next_turn_id(self, conversation_id: str) -> int:
        existing = self.get_messages(conversation_id)
        return max((m.turn_id for m in existing), default=0) + 1

    def last_seq(self, conversation_id: str) -> int:
        existing = self.get_messages(conversation_id)
        return max((m.seq for m in existing), default=0)
