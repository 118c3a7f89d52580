"""rpg-stream: command-line front end.

Parses a saved model turn (or stdin) the way the live pipeline would and
prints what it produces:

    rpg-stream parse turn.txt                  # message units, one JSON per line
    rpg-stream parse turn.txt --progress       # live progress events
    rpg-stream parse - --combined < turn.txt   # combined text for analysis
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Iterator
from pathlib import Path

from dotenv import load_dotenv

from rpg_stream.config import load_vocabulary, parse_vocabulary_json, read_env_file
from rpg_stream.models import ProgressEvent, TagConfigError
from rpg_stream.pipeline import BlockAggregator

logger = logging.getLogger(__name__)


def _chunks(text: str, size: int) -> Iterator[str]:
    if size <= 0:
        yield text
        return
    for start in range(0, len(text), size):
        yield text[start:start + size]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rpg-stream", description="Tagged model output splitter")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    parse = sub.add_parser("parse", help="Split one model turn into message units")
    parse.add_argument("input", help="File holding the raw turn text, or - for stdin")
    parse.add_argument("--chunk-size", type=int, default=0,
                       help="Feed the text in chunks of this many chars (default: all at once)")
    parse.add_argument("--env-file", type=Path, default=None,
                       help="Read CHAT_TAG_* constants from this .env file")
    parse.add_argument("--vocabulary-json", type=Path, default=None,
                       help="JSON object of extra block kinds")
    output = parse.add_mutually_exclusive_group()
    output.add_argument("--progress", action="store_true",
                        help="Print live progress events instead of message units")
    output.add_argument("--combined", action="store_true",
                        help="Print the combined rendered text instead of message units")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.env_file:
        values = read_env_file(args.env_file)
    else:
        load_dotenv()
        values = dict(os.environ)

    try:
        extra = None
        if args.vocabulary_json:
            extra = parse_vocabulary_json(args.vocabulary_json.read_text())
        vocabulary = load_vocabulary(values, extra=extra)
    except TagConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    text = sys.stdin.read() if args.input == "-" else Path(args.input).read_text()

    def _print_progress(event: ProgressEvent) -> None:
        print(event.model_dump_json(exclude_none=True))

    aggregator = BlockAggregator(
        vocabulary, on_progress=_print_progress if args.progress else None,
    )
    for chunk in _chunks(text, args.chunk_size):
        aggregator.feed(chunk)
    result = aggregator.finish()

    if args.combined:
        sys.stdout.write(result.combined_text)
    elif not args.progress:
        for unit in result.units:
            print(unit.model_dump_json())
    return 0


if __name__ == "__main__":
    sys.exit(main())
