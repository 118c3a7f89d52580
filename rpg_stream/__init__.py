"""rpg-stream: split streamed role-play model output into typed blocks and messages."""

__version__ = "0.1.0"
