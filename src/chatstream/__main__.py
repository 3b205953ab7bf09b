"""CLI entrypoint for chatstream."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
import mimetypes
from pathlib import Path
import sys
from typing import Any

from .attachments import decode_data_uri, encode_data_uri
from .config import load_config
from .engine import ChatEngine
from .exceptions import StorageFailureError, UnknownSessionError
from .logging_utils import configure_logging
from .models import Role
from .pipeline import TurnOutcome, TurnRequest
from .session_store import SessionState


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatstream",
        description="chatstream - streaming multimodal chat from the terminal",
    )
    parser.add_argument("prompt", nargs="?", default="", help="Message to send")
    parser.add_argument(
        "--image",
        action="append",
        default=[],
        metavar="PATH",
        help="Attach an image file (repeatable)",
    )
    parser.add_argument("--image-mode", action="store_true", help="Generate or edit an image")
    parser.add_argument("--web-search", action="store_true", help="Ground the answer with web search")
    parser.add_argument("--model", help="Model to use for chat turns")
    parser.add_argument("--session", metavar="ID", help="Send to this session")
    parser.add_argument("--new", action="store_true", help="Start a new session first")
    parser.add_argument("--list", action="store_true", help="List sessions and exit")
    parser.add_argument("--models", action="store_true", help="List configured models and exit")
    parser.add_argument("--delete", metavar="ID", help="Delete a session and exit")
    parser.add_argument("--export", metavar="ID", help="Export a session to markdown and exit")
    parser.add_argument("--save-image", metavar="PATH", help="Write a generated image here")
    parser.add_argument("--config", metavar="PATH", help="Use this config file")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    return parser


def _read_image(path: str) -> str:
    target = Path(path).expanduser()
    mime_type = mimetypes.guess_type(target.name)[0] or "image/png"
    return encode_data_uri(target.read_bytes(), mime_type)


def _print_models(client_config: dict[str, Any]) -> None:
    for name in client_config["models"]:
        marker = "*" if name == client_config["model"] else " "
        print(f"{marker} {name}")
    print(f"  image: {client_config['image_model']}")


def _print_sessions(engine: ChatEngine) -> None:
    current_id = engine.store.state.current_id
    for session in engine.sessions:
        marker = "*" if session.id == current_id else " "
        print(f"{marker} {session.id}  {session.title}  ({len(session.messages)} messages)")


class _Printer:
    """Echo the growing placeholder text of the in-flight turn to stdout."""

    def __init__(self) -> None:
        self.printed = ""

    def __call__(self, state: SessionState) -> None:
        session = state.current
        if session is None or not session.messages:
            return
        last = session.messages[-1]
        if last.role != Role.MODEL or last.id not in state.in_flight or last.is_error:
            return
        if last.text.startswith(self.printed):
            sys.stdout.write(last.text[len(self.printed) :])
        else:
            sys.stdout.write("\n" + last.text)
        sys.stdout.flush()
        self.printed = last.text


async def _run(args: argparse.Namespace, engine: ChatEngine) -> int:
    if args.list:
        _print_sessions(engine)
        return 0
    if args.delete:
        engine.delete_session(args.delete)
        print(f"Deleted {args.delete}")
        return 0
    if args.export:
        print(engine.export_session(args.export))
        return 0

    if args.new:
        engine.new_session()
    if args.session:
        engine.select_session(args.session)

    request = TurnRequest(
        text=args.prompt,
        attachments=tuple(_read_image(path) for path in args.image),
        image_mode=args.image_mode,
        web_search=args.web_search,
        model=args.model,
    )
    printer = _Printer()
    unsubscribe = engine.store.subscribe(printer)
    try:
        result = await engine.send(request)
    finally:
        unsubscribe()

    if result is None:
        print("Nothing to send.", file=sys.stderr)
        return 1

    session = engine.store.get(result.session_id)
    reply = session.find_message(result.placeholder_id) if session else None
    if result.outcome == TurnOutcome.FAILED:
        print(reply.text if reply else result.error, file=sys.stderr)
        return 1
    if reply is None:
        return 0
    print()

    for source in reply.grounding_sources or ():
        print(f"[source] {source.title or source.uri}: {source.uri}")
    if reply.generated_image is not None:
        token = reply.generated_image.token
        if args.save_image:
            payload = await engine.resolve_attachment(token)
            if payload is None:
                print(f"Image {token} not found.", file=sys.stderr)
                return 1
            _, data = decode_data_uri(payload)
            Path(args.save_image).expanduser().write_bytes(data)
            print(f"[image] saved {token} to {args.save_image}")
        else:
            print(f"[image] {token}")
    return 0


async def _main_async(args: argparse.Namespace) -> int:
    config = load_config(Path(args.config).expanduser() if args.config else None)
    configure_logging(config["logging"])
    if args.models:
        _print_models(config["client"])
        return 0
    engine = ChatEngine.from_config(config)
    try:
        return await _run(args, engine)
    except UnknownSessionError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except StorageFailureError as exc:
        print(f"Could not store attachments: {exc}", file=sys.stderr)
        return 2
    finally:
        await engine.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Parse CLI flags and run one command or turn."""
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("chatstream")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"chatstream {version}")
        return 0

    return asyncio.run(_main_async(args))


if __name__ == "__main__":
    sys.exit(main())
