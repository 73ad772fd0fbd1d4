"""Resolve repository paths against local directories and remote upstreams."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import stat
import time
from collections.abc import Iterable
from dataclasses import dataclass
from http import HTTPStatus
from pathlib import Path, PurePosixPath
from typing import BinaryIO

import aiohttp

from .reply import ContentType, Reply
from .repository import ConfigError, RemoteUpstream, Repository

log = logging.getLogger(__name__)

_LISTING_HEAD = (
    '<!DOCTYPE HTML><html><head><meta charset="utf-8">'
    '<meta name="color-scheme" content="dark light"></head><body><ul>'
)
_LISTING_TAIL = "</ul></body></html>"


class ErrorKind(enum.Enum):
    """What went wrong while resolving a repository file."""

    READ_CONFIG = enum.auto()
    PARSE_CONFIG = enum.auto()
    NOT_FOUND = enum.auto()
    READ_FILE = enum.auto()
    READ_DIRECTORY = enum.auto()
    READ_DIRECTORY_ENTRY = enum.auto()
    READ_DIRECTORY_ENTRY_NON_UTF8_NAME = enum.auto()
    PANICKED = enum.auto()
    INVALID_UTF8 = enum.auto()
    UPSTREAM_REQUEST_ERROR = enum.auto()
    UPSTREAM_BODY_READ_ERROR = enum.auto()
    UPSTREAM_STATUS = enum.auto()
    FILE_CREATE_FAILED = enum.auto()
    FILE_WRITE_FAILED = enum.auto()
    FILE_CONTAINS_NO_DOT = enum.auto()


_MESSAGES = {
    ErrorKind.READ_CONFIG: "Error reading repo config",
    ErrorKind.PARSE_CONFIG: "Error parsing repo config",
    ErrorKind.NOT_FOUND: "File or Directory could not be found",
    ErrorKind.READ_FILE: "Error whilst reading file",
    ErrorKind.READ_DIRECTORY: "Error whist reading directory",
    ErrorKind.READ_DIRECTORY_ENTRY: "Error whist reading directory entries",
    ErrorKind.READ_DIRECTORY_ENTRY_NON_UTF8_NAME:
        "Error: directory contains entries with non UTF-8 names",
    ErrorKind.PANICKED: "Error: implementation panicked",
    ErrorKind.INVALID_UTF8: "Error: request path included invalid utf-8 characters",
    ErrorKind.UPSTREAM_REQUEST_ERROR: "Error: Failed to send a request to the Upstream",
    ErrorKind.UPSTREAM_BODY_READ_ERROR: "Error: Failed to read the response of the Upstream",
    ErrorKind.FILE_CREATE_FAILED:
        "Error: Failed to create a file to write the upstream's response into",
    ErrorKind.FILE_WRITE_FAILED:
        "Error: Failed to write to a local file to contain the upstream's response",
    ErrorKind.FILE_CONTAINS_NO_DOT:
        "Error: Refusing to contact upstream about files, which don't contain a '.' in them",
}


def _status_text(code: int) -> str:
    try:
        reason = HTTPStatus(code).phrase
    except ValueError:
        reason = "<unknown status code>"
    return f"{code} {reason}"


@dataclass(frozen=True)
class RepoFileError:
    """One failure; ``status`` is set for ``UPSTREAM_STATUS``."""

    kind: ErrorKind
    status: int | None = None

    def can_404(self) -> bool:
        """Whether this failure is compatible with answering 404."""
        if self.kind is ErrorKind.NOT_FOUND:
            return True
        if self.kind is ErrorKind.UPSTREAM_STATUS and self.status is not None:
            return 400 <= self.status < 500
        return False

    def message(self) -> str:
        if self.kind is ErrorKind.UPSTREAM_STATUS:
            return f"Upstream repo responded with a non 200 status code: {_status_text(self.status or 0)}"
        return _MESSAGES[self.kind]


class ResolveFailed(Exception):
    """Raised when a path could not be resolved; carries every failure seen."""

    def __init__(self, errors: Iterable[RepoFileError]) -> None:
        self.errors: tuple[RepoFileError, ...] = tuple(errors)
        super().__init__("; ".join(e.message() for e in self.errors) or "no error reported")


def _fail(kind: ErrorKind, status: int | None = None) -> ResolveFailed:
    return ResolveFailed([RepoFileError(kind, status)])


class ConfigCache:
    """Repository configurations already read, keyed by repository name."""

    def __init__(self) -> None:
        self._entries: dict[str, Repository] = {}

    def get(self, name: str) -> Repository | None:
        return self._entries.get(name)

    def insert(self, name: str, repository: Repository) -> bool:
        """Store ``repository`` unless ``name`` is cached; return whether it was stored."""
        if name in self._entries:
            return False
        self._entries[name] = repository
        return True

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class LocalFile:
    """An opened file to be sent as the body."""

    stream: BinaryIO

    def to_reply(self, path: str, repo: str) -> Reply:
        return Reply(status=200, content=self.stream, content_type=ContentType.BINARY)


@dataclass
class UpstreamBody:
    """An upstream response whose body is relayed as it arrives."""

    response: aiohttp.ClientResponse

    def to_reply(self, path: str, repo: str) -> Reply:
        return Reply(status=200, content=self.response, content_type=ContentType.BINARY)


@dataclass(frozen=True)
class DirListing:
    """The names found in a directory, possibly merged over several repositories."""

    entries: frozenset[str]

    def to_reply(self, path: str, repo: str) -> Reply:
        items = "".join(
            f'<li><a href="/{repo}/{path}/{entry}">{entry}</a></li>'
            for entry in sorted(self.entries)
        )
        return Reply(
            status=200,
            content=_LISTING_HEAD + items + _LISTING_TAIL,
            content_type=ContentType.HTML,
        )


StoredPath = LocalFile | UpstreamBody | DirListing


def _discard(result: StoredPath) -> None:
    if isinstance(result, LocalFile):
        result.stream.close()
    elif isinstance(result, UpstreamBody):
        result.response.release()


def _list_dir(path: Path) -> DirListing:
    try:
        iterator = os.scandir(path)
    except FileNotFoundError:
        raise _fail(ErrorKind.NOT_FOUND) from None
    except OSError as exc:
        log.warning("Error reading directory: %s", exc)
        raise _fail(ErrorKind.READ_DIRECTORY) from None
    with iterator:
        try:
            names = [entry.name for entry in iterator]
        except OSError as exc:
            log.warning("Error reading directory entry: %s", exc)
            raise _fail(ErrorKind.READ_DIRECTORY_ENTRY) from None
    for name in names:
        try:
            name.encode("utf-8")
        except UnicodeEncodeError:
            log.warning("Error: directory contains entries with non UTF-8 names")
            raise _fail(ErrorKind.READ_DIRECTORY_ENTRY_NON_UTF8_NAME) from None
    return DirListing(frozenset(names))


async def serve_stored_dir(path: str | os.PathLike[str]) -> DirListing:
    """List the directory at ``path``."""
    return await asyncio.to_thread(_list_dir, Path(path))


def _file_error(exc: OSError) -> ResolveFailed:
    if isinstance(exc, FileNotFoundError):
        return _fail(ErrorKind.NOT_FOUND)
    log.warning("Error reading file: %s", exc)
    return _fail(ErrorKind.READ_FILE)


async def serve_stored_path(path: str | os.PathLike[str], display_dir: bool) -> LocalFile | DirListing:
    """Open the file at ``path``, or list it when it is a directory."""
    path = Path(path)
    try:
        stream = await asyncio.to_thread(open, path, "rb")
    except IsADirectoryError as exc:
        if display_dir:
            return await serve_stored_dir(path)
        raise _file_error(exc) from None
    except OSError as exc:
        raise _file_error(exc) from None
    try:
        info = os.fstat(stream.fileno())
    except OSError as exc:
        stream.close()
        raise _file_error(exc) from None
    # Only directories are listed; anything else that can be read is served as is.
    if stat.S_ISDIR(info.st_mode):
        stream.close()
        return await serve_stored_dir(path)
    return LocalFile(stream)


def _micros_since(start: float) -> int:
    return int((time.perf_counter() - start) * 1_000_000)


class Resolver:
    """Finds a repository path locally, in local upstreams, or at remote upstreams."""

    def __init__(
        self,
        root: str | os.PathLike[str],
        session: aiohttp.ClientSession,
        cache: ConfigCache | None = None,
    ) -> None:
        self.root = Path(root)
        self.session = session
        self.cache = cache if cache is not None else ConfigCache()

    async def load_config(self, repo: str) -> Repository:
        """Return the configuration of ``repo``, reading ``.<repo>.json`` if not cached."""
        cached = self.cache.get(repo)
        if cached is not None:
            log.info("Using cached repo config")
            return cached
        log.info("Getting repo config")
        config_path = self.root / f".{repo}.json"
        try:
            raw = await asyncio.to_thread(config_path.read_bytes)
            text = raw.decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            log.error("Error reading repo config: %s", exc)
            raise _fail(ErrorKind.READ_CONFIG) from None
        try:
            config = Repository.from_json(text)
        except ConfigError as exc:
            log.error("Error parsing repo config: %s", exc)
            raise _fail(ErrorKind.PARSE_CONFIG) from None
        if not self.cache.insert(repo, config):
            log.info("A cached config already exists for %s.", repo)
        return config

    async def _load_named(self, name: str) -> tuple[str, Repository]:
        return name, await self.load_config(name)

    def _scan(
        self,
        repo: str,
        config: Repository,
        visited: set[str],
        out: list[tuple[str, Repository]],
    ) -> list[asyncio.Task[tuple[str, Repository]]]:
        tasks = []
        stack = [config]
        while stack:
            current = stack.pop()
            for upstream in current.local_upstreams():
                if upstream.path in visited:
                    log.info("%s: Skipping duplicate local upstream: %s", repo, upstream.path)
                    continue
                visited.add(upstream.path)
                cached = self.cache.get(upstream.path)
                if cached is not None:
                    out.append((upstream.path, cached))
                    stack.append(cached)
                else:
                    tasks.append(asyncio.create_task(self._load_named(upstream.path)))
        return tasks

    async def look_locations(
        self, repo: str
    ) -> tuple[list[tuple[str, Repository]], list[RepoFileError]]:
        """Collect ``repo`` and all its local upstreams, transitively, with their configs."""
        start = time.perf_counter()
        try:
            config = await self.load_config(repo)
        except ResolveFailed as exc:
            return [], list(exc.errors)
        out = [(repo, config)]
        errors: list[RepoFileError] = []
        log.info("%s: get_repo_config took %dµs", repo, _micros_since(start))
        start = time.perf_counter()

        visited: set[str] = set()
        pending = set(self._scan(repo, config, visited, out))
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                try:
                    name, found = task.result()
                except ResolveFailed as exc:
                    errors.extend(exc.errors)
                    continue
                except Exception:
                    log.exception("%s: Failed whilst trying to resolve repo config", repo)
                    errors.append(RepoFileError(ErrorKind.PANICKED))
                    continue
                pending.update(self._scan(repo, found, visited, out))
                out.append((name, found))
        log.info("%s: collecting all configs took %dµs", repo, _micros_since(start))
        return out, errors

    async def serve_remote(
        self,
        remote: RemoteUpstream,
        path: str,
        repo: str,
        stores_remote_upstream: bool,
    ) -> LocalFile | UpstreamBody:
        """Fetch ``path`` from ``remote``, storing it under ``repo`` if asked to."""
        url = f"{remote.url}/{path}"
        try:
            response = await self.session.get(
                url, timeout=aiohttp.ClientTimeout(total=remote.timeout)
            )
        except (aiohttp.ClientError, TimeoutError) as exc:
            log.warning("Error contacting Upstream repo: %s", exc)
            raise _fail(ErrorKind.UPSTREAM_REQUEST_ERROR) from None
        if response.status != 200:
            response.release()
            if response.status == 404:
                raise _fail(ErrorKind.NOT_FOUND)
            log.warning("Upstream repo didn't respond with Ok: %s", response.status)
            raise _fail(ErrorKind.UPSTREAM_STATUS, response.status)

        if not stores_remote_upstream:
            return UpstreamBody(response)
        try:
            return await self._store(response, self.root / repo / PurePosixPath(path))
        finally:
            response.release()

    async def _store(self, response: aiohttp.ClientResponse, target: Path) -> LocalFile:
        try:
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            log.error("Error creating directories to %s: %s", target, exc)
        try:
            handle = await asyncio.to_thread(open, target, "xb")
        except OSError as exc:
            log.error("Error Creating File: %s", exc)
            raise _fail(ErrorKind.FILE_CREATE_FAILED) from None

        write_failed = False
        with handle:
            while True:
                try:
                    chunk = await response.content.readany()
                except (aiohttp.ClientError, TimeoutError) as exc:
                    log.warning("Error reading Upstream response: %s", exc)
                    raise _fail(ErrorKind.UPSTREAM_BODY_READ_ERROR) from None
                if not chunk:
                    break
                try:
                    await asyncio.to_thread(handle.write, chunk)
                except OSError as exc:
                    log.error("Error writing to File %s: %s", target, exc)
                    write_failed = True
                    break
        if write_failed:
            try:
                await asyncio.to_thread(target.unlink)
            except OSError as exc:
                log.error("Error deleting File after error writing to File %s: %s", target, exc)
            raise _fail(ErrorKind.FILE_WRITE_FAILED)

        try:
            stream = await asyncio.to_thread(open, target, "rb")
        except OSError as exc:
            raise _file_error(exc) from None
        return LocalFile(stream)

    @staticmethod
    async def _collect(
        tasks: Iterable[asyncio.Task[StoredPath]], errors: list[RepoFileError]
    ) -> StoredPath | None:
        """Merge directory listings; stop at the second result if either is not one."""
        out: StoredPath | None = None
        pending = set(tasks)
        finished = False
        try:
            while pending and not finished:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    try:
                        value = task.result()
                    except ResolveFailed as exc:
                        errors.extend(exc.errors)
                        continue
                    except Exception:
                        log.exception("Failed whilst trying to resolve repo file")
                        errors.append(RepoFileError(ErrorKind.PANICKED))
                        continue
                    if finished:
                        _discard(value)
                    elif out is None:
                        out = value
                    elif isinstance(out, DirListing) and isinstance(value, DirListing):
                        out = DirListing(out.entries | value.entries)
                    else:
                        _discard(value)
                        finished = True
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return out

    async def resolve(self, repo: str, path: str) -> StoredPath:
        """Find ``path`` in ``repo``; raise :class:`ResolveFailed` with every failure if absent."""
        path = path.strip("/")
        relative = PurePosixPath(path)
        start = time.perf_counter()
        configs, errors = await self.look_locations(repo)
        log.info("%s: get_repo_look_locations took %dµs", repo, _micros_since(start))
        start = time.perf_counter()

        local_tasks = [
            asyncio.create_task(serve_stored_path(self.root / name / relative, True))
            for name, _ in configs
        ]
        result = await self._collect(local_tasks, errors)
        if result is not None:
            log.info(
                "%s: final resolve took %dµs (skipped remotes, as the information could be "
                "locally sourced)", repo, _micros_since(start),
            )
            return result
        log.info("%s: local resolve took %dµs", repo, _micros_since(start))
        start = time.perf_counter()

        if "." not in relative.name:
            errors.append(RepoFileError(ErrorKind.FILE_CONTAINS_NO_DOT))
            raise ResolveFailed(errors)

        seen: set[str] = set()
        remote_tasks = []
        for name, config in configs:
            for remote in config.remote_upstreams():
                if remote.url in seen:
                    continue
                seen.add(remote.url)
                remote_tasks.append(asyncio.create_task(
                    self.serve_remote(remote, path, name, config.stores_remote_upstream)
                ))
        result = await self._collect(remote_tasks, errors)
        log.info("%s: final resolve took %dµs (contacted remotes)", repo, _micros_since(start))
        if result is not None:
            return result
        raise ResolveFailed(errors)