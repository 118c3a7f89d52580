"""Core domain models.

The parser, aggregator and storage adapters all operate on these types.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator

MessageKind = Literal["ACTOR", "SYSTEM"]

ProgressEventType = Literal["block:start", "block:data"]


class TagConfigError(ValueError):
    """Raised when a tag vocabulary entry cannot be used by the parser."""


class TagConfig(BaseModel):
    """How one block kind is spelled in the model output."""

    model_config = ConfigDict(frozen=True)

    tag: str
    parameterized: bool = False  # True → "[tag:value]", e.g. a speaker name

    @field_validator("tag")
    @classmethod
    def _check_tag(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("tag must not be empty")
        if "[" in value or "]" in value:
            raise ValueError(f"tag {value!r} must not contain brackets")
        return value


# block-kind identifier → TagConfig, in caller order
TagVocabulary = dict[str, TagConfig]


class BlockStart(BaseModel):
    """A new tagged region began."""

    model_config = ConfigDict(frozen=True)

    kind: str  # a configured identifier, or "unknown"
    name: str | None = None  # parameterized tags only, original casing
    original_tag: str  # raw bracket contents, verbatim


class BlockData(BaseModel):
    """One character of the current block's content."""

    model_config = ConfigDict(frozen=True)

    data: str


ParserEvent = BlockStart | BlockData


class Block(BaseModel):
    """A materialized block: everything between its tag and the next one."""

    kind: str
    name: str | None = None
    content: str = ""


class Channel(BaseModel):
    """Where a block goes: which message kind, and whether the player sees it."""

    model_config = ConfigDict(frozen=True)

    message_kind: MessageKind
    visible: bool


class MessageUnit(BaseModel):
    """A merged, persistable run of same-channel blocks."""

    message_kind: MessageKind
    body: str
    visible: bool

    @property
    def channel(self) -> Channel:
        return Channel(message_kind=self.message_kind, visible=self.visible)


class ProgressEvent(BaseModel):
    """A live notification forwarded to the UI while a turn streams in."""

    event: ProgressEventType
    kind: str
    name: str | None = None
    data: str | None = None  # block:data only


class StoredMessage(BaseModel):
    """A message unit as persisted in a conversation's append-only log."""

    turn_id: int
    seq: int
    message_kind: MessageKind
    owner: str | None = None  # speaking entity id, ACTOR messages only
    body: str
    visible: bool = True
