from pathlib import Path

import pytest

from rpg_stream.config import DEFAULT_VOCABULARY, load_vocabulary
from rpg_stream.models import TagConfig, TagVocabulary
from rpg_stream.storage import Storage


@pytest.fixture
def vocabulary() -> TagVocabulary:
    """The five built-in kinds with their default spellings."""
    return dict(DEFAULT_VOCABULARY)


@pytest.fixture
def whisper_vocabulary() -> TagVocabulary:
    """Defaults plus a runtime-added parameterized kind."""
    return load_vocabulary(extra={"whisper": TagConfig(tag="whisper", parameterized=True)})


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    """Fresh JSON storage per test; tmp_path is kept by pytest for inspection."""
    return Storage(tmp_path / "data")
