import argparse
import asyncio
import logging
import sys
from dataclasses import replace

import uvicorn

from .app import create_app
from .config import Settings
from .errors import Surface
from .probe import probe

logger = logging.getLogger("fakegpt")


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fakegpt", description="Fake OpenAI / Anthropic API server for client testing")
    parser.add_argument("--log-level", default=settings.log_level, help="logging level (default: %(default)s)")
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="run the server (default)")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)

    check = commands.add_parser("probe", help="call a running server and reassemble the reply")
    check.add_argument("--url", default=f"http://{settings.host}:{settings.port}")
    check.add_argument("--api-key", default=settings.api_key)
    check.add_argument("--surface", choices=[s.value for s in (Surface.OPENAI, Surface.ANTHROPIC)], default="openai")
    check.add_argument("--model", default=None)
    check.add_argument("--prompt", default="hi")
    check.add_argument("--stream", action="store_true")
    return parser


def serve(settings: Settings) -> int:
    app = create_app(settings)
    logger.info(f"OpenAI endpoint: http://{settings.host}:{settings.port}/v1/chat/completions")
    logger.info(f"Anthropic endpoint: http://{settings.host}:{settings.port}/v1/messages")
    logger.info(f"Admin panel: http://{settings.host}:{settings.port}/")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


def run_probe(args) -> int:
    result = asyncio.run(probe(
        args.url,
        args.api_key,
        surface=Surface(args.surface),
        stream=args.stream,
        model=args.model,
        prompt=args.prompt,
    ))
    if result.error:
        print(f"HTTP {result.status}: {result.error}", file=sys.stderr)
        return 1
    print(result.text)
    stats = f"{len(result.text)} chars, {result.elapsed:.2f}s"
    if args.stream:
        stats += f", {result.events} events, first after {result.first_event_after or 0:.2f}s"
        if not result.finished:
            stats += ", NO TERMINATOR"
    print(stats, file=sys.stderr)
    return 0 if result.ok else 1


def main(argv=None) -> int:
    settings = Settings.from_env()
    args = build_parser(settings).parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s")

    if args.command == "probe":
        return run_probe(args)
    if args.command == "serve":
        settings = replace(settings, host=args.host, port=args.port, log_level=args.log_level.upper())
    return serve(settings)


if __name__ == "__main__":
    sys.exit(main())
