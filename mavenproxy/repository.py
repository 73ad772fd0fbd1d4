"""Repository configuration: which local and remote upstreams a repository draws on."""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

_NANOS_PER_SEC = 1_000_000_000
_MAX_SECS = 2**64 - 1
_MAX_NANOS = 2**32 - 1


class ConfigError(ValueError):
    """Raised when a repository configuration is malformed."""


@dataclass(frozen=True)
class LocalUpstream:
    """Another repository on this server whose files are also served."""

    path: str


@dataclass(frozen=True)
class RemoteUpstream:
    """A remote repository queried over HTTP; ``timeout`` is in seconds."""

    url: str
    timeout: float


Upstream = LocalUpstream | RemoteUpstream


def _require_field(data: Mapping[str, Any], name: str, what: str) -> Any:
    try:
        return data[name]
    except KeyError:
        raise ConfigError(f"missing field `{name}` in {what}") from None


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ConfigError(f"expected an object for {what}, got {type(data).__name__}")
    return data


def _require_str(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"expected a string for {what}, got {type(value).__name__}")
    return value


def _require_uint(value: Any, limit: int, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"expected an unsigned integer for {what}, got {value!r}")
    if not 0 <= value <= limit:
        raise ConfigError(f"{what} out of range: {value}")
    return value


def _parse_duration(data: Any) -> float:
    """Read a duration given as ``{"secs": s, "nanos": n}`` or ``[s, n]``."""
    if isinstance(data, Mapping):
        secs = _require_field(data, "secs", "duration")
        nanos = _require_field(data, "nanos", "duration")
    elif isinstance(data, (list, tuple)) and len(data) == 2:
        secs, nanos = data
    else:
        raise ConfigError(f"invalid duration: {data!r}")
    secs = _require_uint(secs, _MAX_SECS, "duration secs")
    nanos = _require_uint(nanos, _MAX_NANOS, "duration nanos")
    extra, nanos = divmod(nanos, _NANOS_PER_SEC)
    secs += extra
    if secs > _MAX_SECS:
        raise ConfigError("overflow deserializing duration")
    return secs + nanos / _NANOS_PER_SEC


def _duration_to_dict(seconds: float) -> dict[str, int]:
    secs = int(seconds)
    nanos = round((seconds - secs) * _NANOS_PER_SEC)
    if nanos >= _NANOS_PER_SEC:
        secs += 1
        nanos -= _NANOS_PER_SEC
    return {"secs": secs, "nanos": nanos}


def parse_upstream(data: Any) -> Upstream:
    """Parse an upstream given as ``{"Local": {...}}`` or ``{"Remote": {...}}``."""
    data = _require_mapping(data, "upstream")
    if len(data) != 1:
        raise ConfigError("an upstream must have exactly one variant key: `Local` or `Remote`")
    ((variant, body),) = data.items()
    if variant == "Local":
        body = _require_mapping(body, "local upstream")
        path = _require_str(_require_field(body, "path", "local upstream"), "path")
        return LocalUpstream(path=path)
    if variant == "Remote":
        body = _require_mapping(body, "remote upstream")
        url = _require_str(_require_field(body, "url", "remote upstream"), "url")
        timeout = _parse_duration(_require_field(body, "timeout", "remote upstream"))
        return RemoteUpstream(url=url, timeout=timeout)
    raise ConfigError(f"unknown variant `{variant}`, expected `Local` or `Remote`")


def upstream_to_dict(upstream: Upstream) -> dict[str, Any]:
    """Return the configuration form of an upstream."""
    match upstream:
        case LocalUpstream(path=path):
            return {"Local": {"path": path}}
        case RemoteUpstream(url=url, timeout=timeout):
            return {"Remote": {"url": url, "timeout": _duration_to_dict(timeout)}}
    raise TypeError(f"not an upstream: {upstream!r}")


@dataclass(frozen=True)
class Repository:
    """A repository's configuration."""

    stores_remote_upstream: bool
    upstreams: tuple[Upstream, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Any) -> Repository:
        data = _require_mapping(data, "repository")
        stores = _require_field(data, "stores_remote_upstream", "repository")
        if not isinstance(stores, bool):
            raise ConfigError(f"expected a boolean for stores_remote_upstream, got {stores!r}")
        upstreams = _require_field(data, "upstreams", "repository")
        if not isinstance(upstreams, list):
            raise ConfigError(f"expected a list for upstreams, got {type(upstreams).__name__}")
        return cls(
            stores_remote_upstream=stores,
            upstreams=tuple(parse_upstream(item) for item in upstreams),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> Repository:
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ConfigError(f"invalid JSON: {exc}") from exc
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stores_remote_upstream": self.stores_remote_upstream,
            "upstreams": [upstream_to_dict(upstream) for upstream in self.upstreams],
        }

    def local_upstreams(self) -> Iterator[LocalUpstream]:
        """Yield the local upstreams in configuration order."""
        return (u for u in self.upstreams if isinstance(u, LocalUpstream))

    def remote_upstreams(self) -> Iterator[RemoteUpstream]:
        """Yield the remote upstreams in configuration order."""
        return (u for u in self.upstreams if isinstance(u, RemoteUpstream))