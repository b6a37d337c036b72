# apis.py
"""
Request kinds and the per-invocation flow.

Each supported API name maps to one async handler through ``HANDLERS``; the
name is resolved once, before any request is built. ``chat/completions`` is
the conversational path (history replay, streaming, persistence); the other
kinds are single buffered calls whose JSON is printed.
"""

from __future__ import annotations

import enum
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TextIO, Tuple

import orjson

from config import Settings
from convstore import ConversationStore
from errors import ApiError, InputError, ReplayError, StorageWriteError, UnsupportedApi
from payload import DEFAULT_TOPIC, build_api_payload, build_chat_payload, is_streaming
from props import parse_properties
from reconcile import account_tokens, commit, render_reply, reply_from_body
from streaming import decode_stream
from transport import Transport, raise_for_api_status

logger = logging.getLogger(__name__)


class ApiKind(enum.Enum):
    CHAT_COMPLETIONS = "chat/completions"
    MODELS = "models"
    MODERATIONS = "moderations"
    IMAGES_GENERATIONS = "images/generations"
    EMBEDDINGS = "embeddings"

    @classmethod
    def from_name(cls, name: str) -> "ApiKind":
        key = name.strip().strip("/").lower().replace("_", "/")
        for kind in cls:
            if kind.value == key:
                return kind
        raise UnsupportedApi(f"API '{name}' is not available.")


@dataclass
class Options:
    topic: str = DEFAULT_TOPIC
    chat_mode: bool = False
    dry_run: bool = False
    api_name: str = ApiKind.CHAT_COMPLETIONS.value
    prompt_file: Optional[str] = None
    replay_file: Optional[str] = None
    dump_file: Optional[str] = None
    words: List[str] = field(default_factory=list)


@dataclass
class Invocation:
    settings: Settings
    options: Options
    store: ConversationStore
    transport: Transport
    out: TextIO = field(default_factory=lambda: sys.stdout)
    err: TextIO = field(default_factory=lambda: sys.stderr)
    stdin: TextIO = field(default_factory=lambda: sys.stdin)


Handler = Callable[[Invocation], Awaitable[int]]


def dumps_pretty(data: Any) -> str:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode()


# ----------------- Prompt -----------------

def _read_prompt_file(path: str) -> str:
    p = Path(path)
    if not p.is_file():
        raise InputError(f"File not found: {path}.", exit_code=3)
    try:
        raw = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise InputError(f"Error reading prompt file '{path}': {exc}", exit_code=3) from exc
    if not raw:
        raise InputError(f"Empty file: {path}.", exit_code=4)
    return raw.strip()


def resolve_prompt(inv: Invocation, text: str) -> str:
    """Prompt from the command line, else the prompt file, else stdin."""
    prompt_file = inv.options.prompt_file
    if text:
        if prompt_file:
            logger.warning("Prompt file `%s` will be ignored as prompt parameters are provided.", prompt_file)
        return text
    if prompt_file:
        return _read_prompt_file(prompt_file)
    return inv.stdin.read().strip()


def read_prompt(inv: Invocation) -> Tuple[Dict[str, Any], str]:
    props, text = parse_properties(inv.options.words)
    # A pre-recorded response needs no prompt; don't block on stdin for one.
    if inv.options.replay_file:
        return props, text
    prompt = resolve_prompt(inv, text)
    if not prompt:
        raise InputError("Prompt is required.")
    return props, prompt


# ----------------- Request plumbing -----------------

def report_dry_run(inv: Invocation, kind: ApiKind, payload: Optional[Dict[str, Any]]) -> None:
    err = inv.err
    print("Dry-run mode, no API calls made.", file=err)
    print(f"\nRequest URL:\n--------------\n{inv.settings.url_for(kind.value)}", file=err)
    print(f"\nAuthorization:\n--------------\nBearer {inv.settings.masked_key()}", file=err)
    print("\nPayload:\n--------------", file=err)
    print(dumps_pretty(payload if payload is not None else {}), file=err)


def read_replay(path: str) -> Tuple[bytes, Any]:
    try:
        raw = Path(path).read_bytes()
        return raw, orjson.loads(raw)
    except (OSError, ValueError) as exc:
        raise ReplayError(f"Error reading or parsing dumped file '{path}': {exc}") from exc


def dump_response(inv: Invocation, path: str, body: bytes) -> None:
    try:
        Path(path).write_bytes(body)
    except OSError as exc:
        raise StorageWriteError(f"Error writing dump file '{path}': {exc}") from exc
    print(f"Response dumped to '{path}'.", file=inv.err)


def parse_body(body: bytes) -> Any:
    try:
        return orjson.loads(body)
    except orjson.JSONDecodeError as exc:
        raise ApiError(f"Failed to parse API response: {exc}") from exc


async def call_api(
    inv: Invocation,
    kind: ApiKind,
    payload: Optional[Dict[str, Any]],
    method: str = "POST",
) -> Optional[Any]:
    """Single buffered call. ``None`` means the invocation stops here."""
    opts = inv.options
    if opts.replay_file:
        return read_replay(opts.replay_file)[1]
    if opts.dry_run:
        report_dry_run(inv, kind, payload)
        return None
    resp = await inv.transport.send_buffered(kind.value, payload, method=method)
    if opts.dump_file:
        dump_response(inv, opts.dump_file, resp.body)
        return None
    raise_for_api_status(resp.status, resp.reason, resp.body)
    return parse_body(resp.body)


# ----------------- Handlers -----------------

async def run_chat(inv: Invocation) -> int:
    opts = inv.options
    kind = ApiKind.CHAT_COMPLETIONS

    if opts.replay_file:
        raw, body = read_replay(opts.replay_file)
        reply = reply_from_body(body)
        if reply is None:
            logger.warning("Could not extract a message from dumped file '%s'.", opts.replay_file)
            inv.out.write(raw.decode("utf-8", "replace"))
            return 0
        print(render_reply(reply), file=inv.out)
        # Pre-recorded replies never touch the history.
        return 0

    props, prompt = read_prompt(inv)
    record = inv.store.load(opts.topic)
    payload = build_chat_payload(props, record, opts.topic, opts.chat_mode, prompt, inv.settings.model)

    if opts.dry_run:
        report_dry_run(inv, kind, payload)
        return 0

    if is_streaming(payload):
        if opts.dump_file:
            logger.warning("Dumping response to file is not supported for streaming requests. Ignoring -o option.")
        async with inv.transport.send_streamed(kind.value, payload) as resp:
            if not resp.ok:
                raise_for_api_status(resp.status, resp.reason, await resp.aread())
            reply = await decode_stream(resp.lines(), inv.out)
    else:
        body = await call_api(inv, kind, payload)
        if body is None:
            return 0
        reply = reply_from_body(body)
        if reply is None:
            raise ApiError("API response carried no message.")
        print(render_reply(reply), file=inv.out)

    if opts.chat_mode:
        commit(inv.store, opts.topic, prompt, reply, dry_run=opts.dry_run)
    account_tokens(inv.store, opts.topic, reply)
    return 0


async def run_models(inv: Invocation) -> int:
    body = await call_api(inv, ApiKind.MODELS, None, method="GET")
    if body is not None:
        print(dumps_pretty(body), file=inv.out)
    return 0


async def run_moderations(inv: Invocation) -> int:
    props, prompt = read_prompt(inv)
    payload = build_api_payload({"model": "text-moderation-latest", "input": prompt}, props)
    body = await call_api(inv, ApiKind.MODERATIONS, payload)
    if body is None:
        return 0
    results = body.get("results") if isinstance(body, dict) else None
    if isinstance(results, list):
        for result in results:
            print(orjson.dumps(result).decode(), file=inv.out)
    else:
        print(dumps_pretty(body), file=inv.out)
    return 0


async def run_images_generations(inv: Invocation) -> int:
    props, prompt = read_prompt(inv)
    defaults = {"n": 1, "size": "1024x1024", "response_format": "url", "prompt": prompt}
    # Output is a list of URLs, so the format stays fixed.
    payload = build_api_payload(defaults, props, protected=("response_format",))
    body = await call_api(inv, ApiKind.IMAGES_GENERATIONS, payload)
    if body is None:
        return 0
    data = body.get("data") if isinstance(body, dict) else None
    if isinstance(data, list):
        for item in data:
            url = item.get("url") if isinstance(item, dict) else None
            print(url or "", file=inv.out)
    else:
        print(dumps_pretty(body), file=inv.out)
    return 0


async def run_embeddings(inv: Invocation) -> int:
    props, prompt = read_prompt(inv)
    payload = build_api_payload({"model": "text-embedding-ada-002", "input": prompt}, props)
    body = await call_api(inv, ApiKind.EMBEDDINGS, payload)
    if body is not None:
        print(dumps_pretty(body), file=inv.out)
    return 0


HANDLERS: Dict[ApiKind, Handler] = {
    ApiKind.CHAT_COMPLETIONS: run_chat,
    ApiKind.MODELS: run_models,
    ApiKind.MODERATIONS: run_moderations,
    ApiKind.IMAGES_GENERATIONS: run_images_generations,
    ApiKind.EMBEDDINGS: run_embeddings,
}


def resolve_handler(name: str) -> Handler:
    return HANDLERS[ApiKind.from_name(name)]


# ----------------- Topics -----------------

def create_topic(inv: Invocation) -> int:
    opts = inv.options
    system_prompt = resolve_prompt(inv, " ".join(opts.words))
    if not system_prompt:
        raise InputError("Prompt for new topic is required")
    if opts.dry_run:
        print(f"Dry-run mode, topic '{opts.topic}' not created.", file=inv.err)
        return 0
    inv.store.create_topic(opts.topic, system_prompt)
    print(f"Topic '{opts.topic}' created with initial prompt '{system_prompt}'", file=inv.err)
    return 0


async def dispatch(inv: Invocation) -> int:
    opts = inv.options
    handler = resolve_handler(opts.api_name)
    if opts.topic == DEFAULT_TOPIC or inv.store.exists(opts.topic):
        return await handler(inv)
    return create_topic(inv)
