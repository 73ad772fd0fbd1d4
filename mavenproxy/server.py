"""HTTP front end: serves repository files, listings and upstream content."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
from collections.abc import AsyncIterator, Iterable, Sequence
from pathlib import Path

import aiohttp
from aiohttp import web
from dotenv import find_dotenv, load_dotenv

from .reply import ContentType, Reply
from .resolver import ConfigCache, ErrorKind, RepoFileError, ResolveFailed, Resolver

log = logging.getLogger(__name__)

_RESOLVER = web.AppKey("resolver", Resolver)

_DOTDOT_MESSAGE = "`..` is not allowed in the path"
_NO_ERROR_MESSAGE = "No error reported, despite being in an error state."


def error_reply(errors: Iterable[RepoFileError]) -> Reply:
    """Build the reply for a failed lookup: 404 if every failure allows it, else 500."""
    errors = list(errors)
    lines = [] if errors else [_NO_ERROR_MESSAGE]
    lines.extend(error.message() for error in errors)
    can_404 = all(error.can_404() for error in errors)
    body = "".join(f"{line}\n" for line in lines)
    return Reply(
        status=404 if can_404 else 500,
        content=body,
        content_type=ContentType.TEXT,
    )


async def get_repo_file(request: web.Request) -> web.StreamResponse:
    """Serve ``/<repo>/<path>`` from the repository, its local or its remote upstreams."""
    repo = request.match_info["repo"]
    raw_path = request.match_info.get("path", "")
    segments = [segment for segment in raw_path.split("/") if segment and segment != "."]
    if ".." in segments:
        return await Reply.text(400, _DOTDOT_MESSAGE).to_response(request)
    str_path = "/".join(segments)
    try:
        str_path.encode("utf-8")
    except UnicodeEncodeError:
        message = RepoFileError(ErrorKind.INVALID_UTF8).message()
        return await Reply.text(500, message).to_response(request)

    resolver = request.app[_RESOLVER]
    try:
        result = await resolver.resolve(repo, str_path)
    except ResolveFailed as exc:
        reply = error_reply(exc.errors)
    else:
        reply = result.to_reply(str_path, repo)
    return await reply.to_response(request)


def create_app(root: str | os.PathLike[str], cache: ConfigCache | None = None) -> web.Application:
    """Build the application serving repositories found under ``root``."""
    cache = cache if cache is not None else ConfigCache()
    app = web.Application()

    async def _resolver_context(app: web.Application) -> AsyncIterator[None]:
        async with aiohttp.ClientSession() as session:
            app[_RESOLVER] = Resolver(root, session, cache)
            yield

    app.cleanup_ctx.append(_resolver_context)
    app.router.add_get("/{repo}", get_repo_file)
    app.router.add_get("/{repo}/{path:.*}", get_repo_file)
    return app


def install_hangup_handler(cache: ConfigCache) -> bool:
    """Clear ``cache`` whenever SIGHUP arrives; return whether the handler was installed."""
    sighup = getattr(signal, "SIGHUP", None)
    if sighup is None:
        return False
    loop = asyncio.get_running_loop()

    def _clear() -> None:
        start = time.perf_counter_ns()
        log.info("Clearing Repository Cache")
        cache.clear()
        log.info("Cleared Repository Cache in %dns", time.perf_counter_ns() - start)

    try:
        loop.add_signal_handler(sighup, _clear)
    except (NotImplementedError, RuntimeError, ValueError):
        return False
    return True


def _load_environment() -> None:
    dotenv_path = find_dotenv(usecwd=True)
    if not dotenv_path:
        print("Could not read .env: file not found", file=sys.stderr)
        return
    try:
        load_dotenv(dotenv_path)
    except OSError as exc:
        print(f"Could not read .env: {exc}", file=sys.stderr)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mavenproxy",
        description="Serve maven repositories from local directories and remote upstreams.",
    )
    parser.add_argument(
        "--address",
        default=os.environ.get("MAVENPROXY_ADDRESS", "127.0.0.1"),
        help="address to listen on",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("MAVENPROXY_PORT", "8000")),
        help="port to listen on",
    )
    parser.add_argument(
        "--root",
        default=os.environ.get("MAVENPROXY_ROOT", "."),
        help="directory holding the repositories and their .<repo>.json configs",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the server until interrupted."""
    _load_environment()
    args = _parse_args(argv)
    level = os.environ.get("MAVENPROXY_LOG", "ERROR").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.ERROR),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("Initialized logging")

    cache = ConfigCache()
    app = create_app(Path(args.root), cache)

    async def _on_startup(app: web.Application) -> None:
        install_hangup_handler(cache)

    app.on_startup.append(_on_startup)
    web.run_app(app, host=args.address, port=args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())