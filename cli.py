#!/usr/bin/env python3
# cli.py
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional, Sequence, Tuple

from apis import ApiKind, Invocation, Options, dispatch
from config import APP_NAME, APP_VERSION, Settings
from convstore import ConversationStore
from errors import CliError, UsageError
from payload import DEFAULT_TOPIC
from props import PROPERTY_PREFIX
from transport import Transport

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "@"

EPILOG = f"""\
topics:
  A topic starts with an at sign, e.g. @work. The first prompt sent to a new
  topic becomes its system prompt:  {APP_NAME} @work You are terse.
  Without -c only that system prompt is replayed; with -c the whole topic is.
  The default topic '{DEFAULT_TOPIC}' never keeps history.

properties:
  +key=value tokens before the prompt override the request payload, e.g.
  +model=gpt-4o-mini +temperature=0.2 +stream=false

other apis:
  {APP_NAME} -a models
  {APP_NAME} -a moderations [+property=value...] [-f file | prompt ...]
  {APP_NAME} -a images/generations [+property=value...] [-f file | prompt ...]
  {APP_NAME} -a embeddings [+property=value...] [-f file | prompt ...]
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description=f"Command-line client for OpenAI-compatible APIs (v{APP_VERSION}).",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", dest="chat_mode", action="store_true", help="continue the topic (chat mode)")
    parser.add_argument("-n", dest="dry_run", action="store_true", help="dry run, print the request instead of sending it")
    parser.add_argument("-a", dest="api_name", default=ApiKind.CHAT_COMPLETIONS.value, metavar="api_name",
                        help="API name (default: %(default)s)")
    parser.add_argument("-f", dest="prompt_file", metavar="file", help="read the prompt from a file ('-' for stdin)")
    parser.add_argument("-o", dest="dump_file", metavar="file", help="dump the response body to a file and exit")
    parser.add_argument("-i", dest="replay_file", metavar="file", help="use a dumped response instead of calling the API")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    parser.add_argument("words", nargs="*", metavar="[+property=value] [@topic] prompt",
                        help="properties, topic and prompt words")
    return parser


def split_topic(words: Sequence[str]) -> Tuple[str, List[str]]:
    """Pull ``@topic`` out of the leading property/topic tokens."""
    rest = list(words)
    for i, word in enumerate(rest):
        if word.startswith(TOPIC_PREFIX) and len(word) > len(TOPIC_PREFIX):
            del rest[i]
            return word[len(TOPIC_PREFIX):], rest
        if not word.startswith(PROPERTY_PREFIX):
            break
    return DEFAULT_TOPIC, rest


def parse_options(argv: Optional[Sequence[str]] = None) -> Tuple[Options, bool]:
    args = build_parser().parse_intermixed_args(argv)
    topic, words = split_topic(args.words)
    prompt_file = None if args.prompt_file == "-" else args.prompt_file
    options = Options(
        topic=topic,
        chat_mode=args.chat_mode,
        dry_run=args.dry_run,
        api_name=args.api_name,
        prompt_file=prompt_file,
        replay_file=args.replay_file,
        dump_file=args.dump_file,
        words=words,
    )
    if options.chat_mode and options.topic == DEFAULT_TOPIC:
        raise UsageError("Topic is required for chatting (-c). Use @topic_name or create one first.")
    return options, args.verbose


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=f"{APP_NAME}: %(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    # Request lines from httpx only when debugging.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


async def run(settings: Settings, options: Options) -> int:
    store = ConversationStore(settings.data_dir)
    async with Transport(settings) as transport:
        return await dispatch(Invocation(settings, options, store, transport))


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        options, verbose = parse_options(argv)
    except CliError as exc:
        setup_logging()
        logger.error(exc.message)
        return exc.exit_code
    setup_logging(verbose)

    try:
        settings = Settings.from_env()
        if settings.compatible_provider and not settings.suppress_provider_tips:
            print(f"OpenAI compatible provider: {settings.compatible_provider}", file=sys.stderr)
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        return asyncio.run(run(settings, options))
    except CliError as exc:
        logger.error(exc.message)
        return exc.exit_code
    except OSError as exc:
        logger.error("Unexpected error: %s", exc)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
