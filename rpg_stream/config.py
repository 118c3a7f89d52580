"""Tag vocabulary and channel policy configuration.

Nothing here reads ambient state on its own: callers hand in the values
(usually ``os.environ`` or the contents of a ``.env`` file) and get back a
plain vocabulary that is passed explicitly to the parser and aggregator.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values
from pydantic import TypeAdapter, ValidationError

from rpg_stream.models import Channel, TagConfig, TagConfigError, TagVocabulary

NARRATIVE = "narrative"
SPEECH = "speech"
EVENT = "event"
LOG = "log"
ANNOUNCE = "announce"
UNKNOWN = "unknown"

# Named constants the tag spelling is looked up under.
TAG_ENV_KEYS: dict[str, str] = {
    NARRATIVE: "CHAT_TAG_NARRATIVE",
    SPEECH: "CHAT_TAG_SPEECH",
    EVENT: "CHAT_TAG_EVENT",
    LOG: "CHAT_TAG_LOG",
    ANNOUNCE: "CHAT_TAG_ANNOUNCE",
}

DEFAULT_VOCABULARY: TagVocabulary = {
    NARRATIVE: TagConfig(tag="narrative"),
    SPEECH: TagConfig(tag="speech", parameterized=True),
    EVENT: TagConfig(tag="event"),
    LOG: TagConfig(tag="log"),
    ANNOUNCE: TagConfig(tag="announce"),
}

ChannelPolicy = dict[str, Channel]

ACTOR_VISIBLE = Channel(message_kind="ACTOR", visible=True)

DEFAULT_CHANNELS: ChannelPolicy = {
    NARRATIVE: ACTOR_VISIBLE,
    SPEECH: ACTOR_VISIBLE,
    EVENT: Channel(message_kind="SYSTEM", visible=False),
    LOG: Channel(message_kind="SYSTEM", visible=False),
    ANNOUNCE: Channel(message_kind="SYSTEM", visible=True),
}

_vocabulary_adapter = TypeAdapter(dict[str, TagConfig])


def load_vocabulary(
    values: Mapping[str, str | None] | None = None,
    extra: TagVocabulary | None = None,
) -> TagVocabulary:
    """Build a vocabulary from named tag constants, falling back to defaults.

    ``values`` maps constant names (``CHAT_TAG_SPEECH`` …) to tag spellings;
    missing or blank entries keep the literal default. ``extra`` kinds are
    merged on top, after the built-in ones.
    """
    vocabulary: TagVocabulary = dict(DEFAULT_VOCABULARY)
    if values:
        for kind, key in TAG_ENV_KEYS.items():
            spelled = (values.get(key) or "").strip()
            if spelled:
                vocabulary[kind] = TagConfig(
                    tag=spelled, parameterized=DEFAULT_VOCABULARY[kind].parameterized,
                )
    if extra:
        for kind, cfg in extra.items():
            if not kind.strip():
                raise TagConfigError("block kind must not be empty")
            if kind == UNKNOWN:
                raise TagConfigError(f"{UNKNOWN!r} is reserved for unrecognised tags")
            vocabulary[kind] = cfg
    return vocabulary


def read_env_file(path: Path) -> dict[str, str | None]:
    """Read tag constants from a ``.env`` file without touching os.environ."""
    return dict(dotenv_values(path))


def parse_vocabulary_json(text: str) -> TagVocabulary:
    """Parse extra kinds from JSON: ``{"whisper": {"tag": "whisper", "parameterized": true}}``."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise TagConfigError(f"Vocabulary is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise TagConfigError(f"Vocabulary must be a JSON object, got {type(data).__name__}")
    try:
        return _vocabulary_adapter.validate_python(data)
    except ValidationError as e:
        raise TagConfigError(f"Invalid vocabulary: {e}") from e


def channel_for(kind: str, policy: ChannelPolicy | None = None) -> Channel:
    """Look up a kind's channel. Unlisted kinds are shown as actor content."""
    if policy is None:
        policy = DEFAULT_CHANNELS
    return policy.get(kind, ACTOR_VISIBLE)


def hidden_kinds(policy: ChannelPolicy | None = None) -> frozenset[str]:
    if policy is None:
        policy = DEFAULT_CHANNELS
    return frozenset(kind for kind, channel in policy.items() if not channel.visible)
