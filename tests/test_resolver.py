import contextlib
import json
import socket

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from mavenproxy.reply import ContentType
from mavenproxy.repository import LocalUpstream, RemoteUpstream, Repository
from mavenproxy.resolver import (
    ConfigCache,
    DirListing,
    ErrorKind,
    LocalFile,
    RepoFileError,
    ResolveFailed,
    Resolver,
    UpstreamBody,
    serve_stored_dir,
    serve_stored_path,
)


def write_config(root, name, repository):
    (root / f".{name}.json").write_text(json.dumps(repository.to_dict()))


def kinds(errors):
    return [error.kind for error in errors]


@contextlib.asynccontextmanager
async def upstream(files):
    async def handler(request):
        value = files.get(request.match_info["tail"])
        if value is None:
            return web.Response(status=404)
        if isinstance(value, int):
            return web.Response(status=value)
        return web.Response(body=value)

    app = web.Application()
    app.router.add_get("/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("")).rstrip("/")
    finally:
        await server.close()


def closed_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# --- errors -----------------------------------------------------------------


def test_can_404():
    assert RepoFileError(ErrorKind.NOT_FOUND).can_404() is True
    assert RepoFileError(ErrorKind.UPSTREAM_STATUS, 404).can_404() is True
    assert RepoFileError(ErrorKind.UPSTREAM_STATUS, 418).can_404() is True
    assert RepoFileError(ErrorKind.UPSTREAM_STATUS, 500).can_404() is False
    assert RepoFileError(ErrorKind.READ_FILE).can_404() is False


def test_messages():
    assert RepoFileError(ErrorKind.NOT_FOUND).message() == "File or Directory could not be found"
    assert RepoFileError(ErrorKind.READ_CONFIG).message() == "Error reading repo config"
    status = RepoFileError(ErrorKind.UPSTREAM_STATUS, 503).message()
    assert status.startswith("Upstream repo responded with a non 200 status code: 503")


def test_resolve_failed_keeps_errors():
    errors = [RepoFileError(ErrorKind.NOT_FOUND), RepoFileError(ErrorKind.READ_FILE)]
    exc = ResolveFailed(errors)
    assert exc.errors == tuple(errors)
    assert "File or Directory could not be found" in str(exc)


# --- cache ------------------------------------------------------------------


def test_config_cache_insert_get_clear():
    cache = ConfigCache()
    first = Repository(stores_remote_upstream=False)
    second = Repository(stores_remote_upstream=True)
    assert cache.get("main") is None
    assert cache.insert("main", first) is True
    assert cache.insert("main", second) is False
    assert cache.get("main") == first
    cache.clear()
    assert cache.get("main") is None


# --- local paths --------------------------------------------------------------


@pytest.mark.asyncio
async def test_serve_stored_dir_lists_entries(tmp_path):
    (tmp_path / "a.jar").write_bytes(b"1")
    (tmp_path / "sub").mkdir()
    listing = await serve_stored_dir(tmp_path)
    assert listing.entries == {"a.jar", "sub"}


@pytest.mark.asyncio
async def test_serve_stored_dir_missing(tmp_path):
    with pytest.raises(ResolveFailed) as info:
        await serve_stored_dir(tmp_path / "missing")
    assert kinds(info.value.errors) == [ErrorKind.NOT_FOUND]


@pytest.mark.asyncio
async def test_serve_stored_path_file(tmp_path):
    target = tmp_path / "lib.jar"
    target.write_bytes(b"jar bytes")
    result = await serve_stored_path(target, True)
    assert isinstance(result, LocalFile)
    with result.stream:
        assert result.stream.read() == b"jar bytes"


@pytest.mark.asyncio
async def test_serve_stored_path_directory(tmp_path):
    (tmp_path / "x.pom").write_text("pom")
    result = await serve_stored_path(tmp_path, True)
    assert isinstance(result, DirListing)
    assert result.entries == {"x.pom"}


@pytest.mark.asyncio
async def test_serve_stored_path_directory_without_listing(tmp_path):
    with pytest.raises(ResolveFailed) as info:
        await serve_stored_path(tmp_path, False)
    assert kinds(info.value.errors) == [ErrorKind.READ_FILE]


@pytest.mark.asyncio
async def test_serve_stored_path_missing(tmp_path):
    with pytest.raises(ResolveFailed) as info:
        await serve_stored_path(tmp_path / "nope.jar", True)
    assert kinds(info.value.errors) == [ErrorKind.NOT_FOUND]


# --- replies ------------------------------------------------------------------


def test_dir_listing_reply_is_sorted_html():
    reply = DirListing(frozenset({"b.jar", "a.jar"})).to_reply("com/x", "main")
    assert reply.status == 200
    assert reply.content_type is ContentType.HTML
    assert reply.content.startswith("<!DOCTYPE HTML>")
    first = '<li><a href="/main/com/x/a.jar">a.jar</a></li>'
    second = '<li><a href="/main/com/x/b.jar">b.jar</a></li>'
    assert reply.content.index(first) < reply.content.index(second)
    assert reply.content.endswith("</ul></body></html>")


def test_local_file_reply(tmp_path):
    target = tmp_path / "f.jar"
    target.write_bytes(b"x")
    with target.open("rb") as stream:
        reply = LocalFile(stream).to_reply("f.jar", "main")
        assert reply.status == 200
        assert reply.content_type is ContentType.BINARY
        assert reply.content is stream


# --- configs ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_load_config_reads_and_caches(tmp_path):
    repository = Repository(False, (LocalUpstream("lib"),))
    write_config(tmp_path, "main", repository)
    async with aiohttp.ClientSession() as session:
        resolver = Resolver(tmp_path, session, ConfigCache())
        assert await resolver.load_config("main") == repository
        assert resolver.cache.get("main") == repository
        (tmp_path / ".main.json").unlink()
        assert await resolver.load_config("main") == repository


@pytest.mark.asyncio
async def test_load_config_missing(tmp_path):
    async with aiohttp.ClientSession() as session:
        resolver = Resolver(tmp_path, session)
        with pytest.raises(ResolveFailed) as info:
            await resolver.load_config("main")
    assert kinds(info.value.errors) == [ErrorKind.READ_CONFIG]


@pytest.mark.asyncio
async def test_load_config_unparsable(tmp_path):
    (tmp_path / ".main.json").write_text("{not json")
    async with aiohttp.ClientSession() as session:
        resolver = Resolver(tmp_path, session)
        with pytest.raises(ResolveFailed) as info:
            await resolver.load_config("main")
    assert kinds(info.value.errors) == [ErrorKind.PARSE_CONFIG]


@pytest.mark.asyncio
async def test_look_locations_follows_local_upstreams(tmp_path):
    write_config(tmp_path, "main", Repository(False, (LocalUpstream("lib"), LocalUpstream("other"))))
    write_config(tmp_path, "lib", Repository(False, (LocalUpstream("deep"), LocalUpstream("other"))))
    write_config(tmp_path, "other", Repository(False))
    write_config(tmp_path, "deep", Repository(True))
    async with aiohttp.ClientSession() as session:
        resolver = Resolver(tmp_path, session)
        found, errors = await resolver.look_locations("main")
    names = [name for name, _ in found]
    assert sorted(names) == ["deep", "lib", "main", "other"]
    assert names[0] == "main"
    assert errors == []


@pytest.mark.asyncio
async def test_look_locations_uses_cache_and_reports_missing(tmp_path):
    write_config(tmp_path, "main", Repository(False, (LocalUpstream("cached"), LocalUpstream("gone"))))
    cache = ConfigCache()
    cache.insert("cached", Repository(True))
    async with aiohttp.ClientSession() as session:
        resolver = Resolver(tmp_path, session, cache)
        found, errors = await resolver.look_locations("main")
    assert dict(found) == {"main": cache.get("main"), "cached": Repository(True)}
    assert kinds(errors) == [ErrorKind.READ_CONFIG]


@pytest.mark.asyncio
async def test_look_locations_missing_root_config(tmp_path):
    async with aiohttp.ClientSession() as session:
        found, errors = await Resolver(tmp_path, session).look_locations("main")
    assert found == []
    assert kinds(errors) == [ErrorKind.READ_CONFIG]


# --- resolve ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resolve_file_from_local_upstream(tmp_path):
    write_config(tmp_path, "main", Repository(False, (LocalUpstream("lib"),)))
    write_config(tmp_path, "lib", Repository(False))
    target = tmp_path / "lib" / "com" / "x" / "a.jar"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"content")
    async with aiohttp.ClientSession() as session:
        result = await Resolver(tmp_path, session).resolve("main", "com/x/a.jar")
    assert isinstance(result, LocalFile)
    with result.stream:
        assert result.stream.read() == b"content"


@pytest.mark.asyncio
async def test_resolve_merges_directory_listings(tmp_path):
    write_config(tmp_path, "main", Repository(False, (LocalUpstream("lib"),)))
    write_config(tmp_path, "lib", Repository(False))
    for name, entry in (("main", "a.jar"), ("lib", "b.jar")):
        directory = tmp_path / name / "com" / "x"
        directory.mkdir(parents=True)
        (directory / entry).write_bytes(b"")
    async with aiohttp.ClientSession() as session:
        result = await Resolver(tmp_path, session).resolve("main", "com/x")
    assert isinstance(result, DirListing)
    assert result.entries == {"a.jar", "b.jar"}


@pytest.mark.asyncio
async def test_resolve_refuses_remote_without_dot(tmp_path):
    write_config(tmp_path, "main", Repository(False))
    async with aiohttp.ClientSession() as session:
        with pytest.raises(ResolveFailed) as info:
            await Resolver(tmp_path, session).resolve("main", "com/missing")
    assert kinds(info.value.errors) == [ErrorKind.NOT_FOUND, ErrorKind.FILE_CONTAINS_NO_DOT]


@pytest.mark.asyncio
async def test_resolve_streams_remote(tmp_path):
    async with upstream({"com/x/a.jar": b"remote bytes"}) as url:
        write_config(tmp_path, "main", Repository(False, (RemoteUpstream(url, 5.0),)))
        async with aiohttp.ClientSession() as session:
            result = await Resolver(tmp_path, session).resolve("main", "com/x/a.jar")
            assert isinstance(result, UpstreamBody)
            try:
                assert await result.response.read() == b"remote bytes"
            finally:
                result.response.release()
    assert not (tmp_path / "main" / "com" / "x" / "a.jar").exists()


@pytest.mark.asyncio
async def test_resolve_stores_remote(tmp_path):
    async with upstream({"com/x/a.jar": b"remote bytes"}) as url:
        write_config(tmp_path, "main", Repository(True, (RemoteUpstream(url, 5.0),)))
        async with aiohttp.ClientSession() as session:
            result = await Resolver(tmp_path, session).resolve("main", "com/x/a.jar")
    assert isinstance(result, LocalFile)
    with result.stream:
        assert result.stream.read() == b"remote bytes"
    assert (tmp_path / "main" / "com" / "x" / "a.jar").read_bytes() == b"remote bytes"


@pytest.mark.asyncio
async def test_resolve_remote_not_found(tmp_path):
    async with upstream({}) as url:
        write_config(tmp_path, "main", Repository(False, (RemoteUpstream(url, 5.0),)))
        async with aiohttp.ClientSession() as session:
            with pytest.raises(ResolveFailed) as info:
                await Resolver(tmp_path, session).resolve("main", "com/x/a.jar")
    assert kinds(info.value.errors) == [ErrorKind.NOT_FOUND, ErrorKind.NOT_FOUND]
    assert all(error.can_404() for error in info.value.errors)


@pytest.mark.asyncio
async def test_resolve_remote_bad_status(tmp_path):
    async with upstream({"com/x/a.jar": 503}) as url:
        write_config(tmp_path, "main", Repository(False, (RemoteUpstream(url, 5.0),)))
        async with aiohttp.ClientSession() as session:
            with pytest.raises(ResolveFailed) as info:
                await Resolver(tmp_path, session).resolve("main", "com/x/a.jar")
    last = info.value.errors[-1]
    assert last == RepoFileError(ErrorKind.UPSTREAM_STATUS, 503)
    assert last.can_404() is False


@pytest.mark.asyncio
async def test_serve_remote_unreachable(tmp_path):
    remote = RemoteUpstream(f"http://127.0.0.1:{closed_port()}", 2.0)
    async with aiohttp.ClientSession() as session:
        with pytest.raises(ResolveFailed) as info:
            await Resolver(tmp_path, session).serve_remote(remote, "a.jar", "main", False)
    assert kinds(info.value.errors) == [ErrorKind.UPSTREAM_REQUEST_ERROR]


@pytest.mark.asyncio
async def test_serve_remote_refuses_to_overwrite(tmp_path):
    existing = tmp_path / "main" / "a.jar"
    existing.parent.mkdir()
    existing.write_bytes(b"old")
    async with upstream({"a.jar": b"new"}) as url:
        async with aiohttp.ClientSession() as session:
            resolver = Resolver(tmp_path, session)
            with pytest.raises(ResolveFailed) as info:
                await resolver.serve_remote(RemoteUpstream(url, 5.0), "a.jar", "main", True)
    assert kinds(info.value.errors) == [ErrorKind.FILE_CREATE_FAILED]
    assert existing.read_bytes() == b"old"