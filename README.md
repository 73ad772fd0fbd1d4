# mavenproxy

mavenproxy is a small HTTP server for Maven repositories. Each repository is a
directory on disk together with a JSON config that lists its upstreams. An
upstream is either another repository on the same server or a remote
repository reached over HTTP. Files fetched from remote upstreams can be stored
on disk as they are fetched.

## Installing

```
pip install .
```

## Running

```
mavenproxy [--address ADDRESS] [--port PORT] [--root ROOT]
```

| Option      | Environment variable  | Default     | Meaning                                                |
|-------------|-----------------------|-------------|--------------------------------------------------------|
| `--address` | `MAVENPROXY_ADDRESS`  | `127.0.0.1` | address to listen on                                   |
| `--port`    | `MAVENPROXY_PORT`     | `8000`      | port to listen on                                      |
| `--root`    | `MAVENPROXY_ROOT`     | `.`         | directory holding the repositories and their configs  |

The log level comes from `MAVENPROXY_LOG` (for example `INFO` or `DEBUG`). The
default is `ERROR`.

Before the options are read, a `.env` file is looked up from the working
directory and loaded if one is found. If there is none, the server prints
`Could not read .env: file not found` to stderr and carries on.

## Repository configuration

A repository named `releases` is configured by `<root>/.releases.json`, and its
files live in the directory `<root>/releases/`:

```json
{
  "stores_remote_upstream": true,
  "upstreams": [
    {"Local": {"path": "internal"}},
    {"Remote": {"url": "https://repo.example.com/maven2",
                "timeout": {"secs": 10, "nanos": 0}}}
  ]
}
```

- `stores_remote_upstream` (required, boolean): when true, files fetched from
  this repository's remote upstreams are written under the repository's
  directory, and the stored copy is served.
- `upstreams` (required, list): each entry has exactly one key, `Local` or
  `Remote`.
- `Local` names another repository by its `path`, meaning its name under the
  root. Local upstreams are followed recursively, and each one is visited only
  once.
- `Remote` gives a base `url` and a request `timeout`. The timeout may be written
  as `{"secs": s, "nanos": n}` or as `[s, n]`.

Configs are read on first use and then cached. Where the platform supports it,
sending the process `SIGHUP` clears the cache, so changed configs are read again.

## Requests

`GET /<repo>/<path>` looks for `<path>` in the repository and in all of its
local upstreams. Empty and `.` segments in the path are ignored.

- If a match is a file, the file is returned as `application/octet-stream`.
- If the matches are directories, an HTML listing is returned. It holds the
  entries of every matching directory, merged and sorted.
- If nothing is found locally and the last path segment contains a `.`, every
  distinct remote upstream URL is asked for `<url>/<path>`, and the first
  successful answer is returned. If that upstream belongs to a repository with
  `stores_remote_upstream` set, the file is first written to
  `<root>/<that repository>/<path>`. An existing file there is never
  overwritten; the fetch then fails.

Paths that contain `..` are rejected with `400 Bad Request`. A lookup gives
`404 Not Found` when every failure it met was "not found" or a 4xx answer from
an upstream. Any other failure gives `500 Internal Server Error`, and so does a
path whose last segment has no `.` and was not found locally. The body of an
error response lists every error that was met, one per line.

## What it does not do

The server only answers `GET` requests. It does not accept uploads or deploys,
does not check authentication, and does not verify or generate checksums. Files
it has stored are never refreshed from the upstream.

## Using it from Python

- `mavenproxy.server.create_app(root, cache=None)` builds the aiohttp
  application, and `mavenproxy.server.main(argv=None)` runs it.
- `mavenproxy.resolver.Resolver(root, session, cache=None)` does the lookups.
  `Resolver.resolve(repo, path)` returns a `LocalFile`, `UpstreamBody` or
  `DirListing`, or raises `ResolveFailed`, whose `errors` hold a
  `RepoFileError` for each failure.
- `mavenproxy.resolver.ConfigCache` holds the configs that have been read.
- `mavenproxy.repository.Repository.from_json(text)` and
  `Repository.from_dict(data)` parse a config and raise `ConfigError` when it is
  malformed. `Repository.to_dict()` gives the config form back.
- `mavenproxy.reply.Reply` turns a status, a body and a `ContentType` into an
  aiohttp response.

## Tests

```
pip install .[test]
pytest
```