"""Zero dependency route tables with segment-count partitioning.

Each HTTP method owns one RouteTable. Static paths live in a plain dict and
are found with a single lookup. Paths with `:name` segments, or with
characters that need full regex semantics, are partitioned by their number of
segments so a request is only ever compared against routes of the same shape.
"""

from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache

from .rsgi import Handler

TOP_LEVEL_MIDDLEWARE = "/"

# ASCII letters, digits, "_", "~", ".", "-" and "/"
_STATIC_PATH = re.compile(r"/?([~\w/.-]+)/?", re.ASCII)
# as above plus ":" for named segments
_NAMED_PATH = re.compile(r"/?([:~\w/.-]+)/?", re.ASCII)
_PARAM_PATTERN = r"([\w\-.~]+)"


class Method(Enum):
    """Keys of a router's route tables.

    MIDDLEWARE holds top-level middleware, it is never matched against a
    request method.
    """

    MIDDLEWARE = "MIDDLEWARE"
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

    def __repr__(self) -> str:
        return str(self.value)

    @classmethod
    def parse(cls, name: str) -> Method | None:
        """Returns the table key for a request method, None if unsupported."""
        try:
            method = cls(name.upper())
        except ValueError:
            return None
        return None if method is cls.MIDDLEWARE else method


HTTP_METHODS = (Method.GET, Method.POST, Method.PUT, Method.PATCH, Method.DELETE)


@dataclass(slots=True, frozen=True)
class RouteEntry:
    """A registered named or regex route."""

    key: str  # regex source, each :name replaced by a capture group
    params: tuple[str, ...]  # names of the capture groups, in order
    callbacks: tuple[Handler, ...]
    path_names: tuple[str, ...]  # segments without the leading empty one
    use_regex: bool

    @property
    def pattern(self) -> str:
        return "/" + "/".join(self.path_names)


@dataclass(slots=True)
class StaticRoute:
    callbacks: list[Handler] = field(default_factory=list)


@dataclass(slots=True)
class RouteTable:
    static_routes: dict[str, StaticRoute] = field(default_factory=dict)
    named_partitions: dict[int, list[RouteEntry]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.static_routes) + sum(
            len(entries) for entries in self.named_partitions.values()
        )


type RouteTables = dict[Method, RouteTable]


def new_tables() -> RouteTables:
    return {method: RouteTable() for method in Method}


@dataclass(slots=True, frozen=True)
class Match:
    callbacks: tuple[Handler, ...]
    pattern: str


@dataclass(slots=True, frozen=True)
class NoMatch:
    pass


@dataclass(slots=True, frozen=True)
class MatchFailure:
    """Matching raised, e.g. a regex route that does not compile."""

    error: Exception


type MatchResult = Match | NoMatch | MatchFailure

NO_MATCH = NoMatch()


def is_static(pattern: str) -> bool:
    return _STATIC_PATH.fullmatch(pattern) is not None


def needs_regex(pattern: str) -> bool:
    return _NAMED_PATH.fullmatch(pattern) is None


def strip_trailing_slash(path: str) -> str:
    if len(path) > 1 and path.endswith("/"):
        return path[:-1]
    return path


def join_prefix(prefix: str, path: str) -> str:
    """join a mount prefix and a route path, /api + /users -> /api/users"""
    return strip_trailing_slash(posixpath.join(prefix, path.lstrip("/")))


def build_search_key(tokens: Sequence[str]) -> tuple[str, tuple[str, ...]]:
    """Convert named segments to a regex key and collect the segment names.

        tokens => ["", "aa", ":one", "bb", "cc", ":two", "e"]
        key    => /aa/([\\w\\-.~]+)/bb/cc/([\\w\\-.~]+)/e
        params => ("one", "two")
    """
    params: list[str] = []
    parts: list[str] = []
    for token in tokens:
        if token.startswith(":"):
            params.append(token[1:])
            parts.append(_PARAM_PATTERN)
        else:
            parts.append(token)
    return "/".join(parts), tuple(params)


def make_entry(
    pattern: str,
    callbacks: Iterable[Handler],
    *,
    use_regex: bool | None = None,
) -> tuple[int, RouteEntry]:
    """Build the entry for a dynamic pattern, returns (bucket, entry).

    `use_regex` overrides the classification of the pattern.
    """
    tokens = pattern.split("/")
    key, params = build_search_key(tokens)
    entry = RouteEntry(
        key=key,
        params=params,
        callbacks=tuple(callbacks),
        path_names=tuple(tokens[1:]),
        use_regex=needs_regex(pattern) if use_regex is None else use_regex,
    )
    return len(tokens) - 1, entry


def register(table: RouteTable, pattern: str, callbacks: Sequence[Handler]) -> None:
    """Register a handler chain for pattern.

    Static paths append to any chain already registered for the same path.
    Dynamic paths are appended to the partition for their segment count, so
    registration order is match priority.
    """
    if not callbacks:
        msg = "No callback function provided"
        raise ValueError(msg)
    if not pattern.startswith("/"):
        msg = f"path must start with '/', provided {pattern=}"
        raise ValueError(msg)
    _insert(table, strip_trailing_slash(pattern), callbacks)


def _insert(table: RouteTable, path: str, callbacks: Sequence[Handler]) -> None:
    if is_static(path):
        route = table.static_routes.get(path)
        if route is None:
            table.static_routes[path] = StaticRoute(list(callbacks))
        else:
            route.callbacks.extend(callbacks)
        return
    bucket, entry = make_entry(path, callbacks)
    table.named_partitions.setdefault(bucket, []).append(entry)


def match(table: RouteTable, url: str, params: dict[str, str]) -> MatchResult:
    """Find the route for a normalized url (no query string or trailing slash).

    Static routes win over dynamic ones. Within a partition the first entry to
    match wins. Path params of the winning entry are written into params.
    """
    try:
        return _match(table, url, params)
    except Exception as e:  # noqa: BLE001  - reported as a result kind, not raised
        return MatchFailure(e)


def _match(table: RouteTable, url: str, params: dict[str, str]) -> MatchResult:
    route = table.static_routes.get(url)
    if route is not None:
        return Match(tuple(route.callbacks), url)

    path_names = url.split("/")[1:]
    entries = table.named_partitions.get(len(path_names))
    if not entries:
        return NO_MATCH

    for entry in entries:
        if entry.use_regex:
            captured = _regex_match(url, entry)
        else:
            captured = _positional_match(path_names, entry.path_names)
        if captured is not None:
            params.update(captured)
            return Match(entry.callbacks, entry.pattern)
    return NO_MATCH


def _positional_match(
    path_names: Sequence[str], key_names: Sequence[str]
) -> dict[str, str] | None:
    """Compare segments right to left, named segments always match."""
    if len(path_names) != len(key_names):
        return None
    captured: dict[str, str] = {}
    for i in range(len(path_names) - 1, -1, -1):
        token = key_names[i]
        if token.startswith(":"):
            captured[token[1:]] = path_names[i]
        elif token != path_names[i]:
            return None
    return captured


def _regex_match(url: str, entry: RouteEntry) -> dict[str, str] | None:
    found = _compile(entry.key).fullmatch(url)
    if found is None:
        return None
    return {name: found.group(i + 1) for i, name in enumerate(entry.params)}


@lru_cache(maxsize=1024)
def _compile(key: str) -> re.Pattern[str]:
    return re.compile(key)


def merge_tables(target: RouteTables, source: RouteTables) -> None:
    """Merge source into target method by method, middleware included.

    Chains for a path present in both are concatenated, target first.
    Partitions for a bucket present in both are concatenated, target first.
    Paths and buckets only in source are added.
    """
    for method, table in source.items():
        dest = target[method]
        for path, route in table.static_routes.items():
            existing = dest.static_routes.get(path)
            if existing is None:
                dest.static_routes[path] = StaticRoute(list(route.callbacks))
            else:
                existing.callbacks.extend(route.callbacks)
        for bucket, entries in table.named_partitions.items():
            dest.named_partitions.setdefault(bucket, []).extend(entries)


def mount_tables(target: RouteTables, prefix: str, source: RouteTables) -> None:
    """Merge source into target with every route path prefixed.

    Each route is re-classified after prefixing: the prefix changes the
    segment count and may change whether regex matching is needed.
    The source's top-level middleware is prepended to each of its routes, so
    it keeps applying to those routes only.
    """
    middleware = source[Method.MIDDLEWARE].static_routes.get(TOP_LEVEL_MIDDLEWARE)
    scoped = tuple(middleware.callbacks) if middleware is not None else ()
    for method in HTTP_METHODS:
        table = source[method]
        dest = target[method]
        for path, route in table.static_routes.items():
            _insert(dest, join_prefix(prefix, path), [*scoped, *route.callbacks])
        for entries in table.named_partitions.values():
            for entry in entries:
                _insert(
                    dest,
                    join_prefix(prefix, entry.pattern),
                    [*scoped, *entry.callbacks],
                )


def format_routes(tables: RouteTables) -> str:
    """Format registered routes as a column-aligned list:

        USE      /                  logging_middleware
        GET      /users             list_users
        GET      /users/:id         load_user > show_user
        GET      /files/(\\d+).txt   show_file   [regex]
    """
    rows: list[tuple[str, str, str]] = []
    for method, table in tables.items():
        label = "USE" if method is Method.MIDDLEWARE else method.value
        for path, route in table.static_routes.items():
            rows.append((label, path, _chain(route.callbacks)))
        for bucket in sorted(table.named_partitions):
            for entry in table.named_partitions[bucket]:
                chain = _chain(entry.callbacks)
                if entry.use_regex:
                    chain += "   [regex]"
                rows.append((label, entry.pattern, chain))
    if not rows:
        return ""

    method_w = max(len(r[0]) for r in rows)
    path_w = max(len(r[1]) for r in rows)
    return "\n".join(
        f"{method:<{method_w}}   {path:<{path_w}}   {chain}"
        for method, path, chain in rows
    )


def _chain(callbacks: Iterable[Handler]) -> str:
    return " > ".join(_qualname(c) for c in callbacks)


def _qualname(obj: object) -> str:
    """Extract __qualname__ from a callable, falling back to repr."""
    return str(obj.__qualname__) if hasattr(obj, "__qualname__") else repr(obj)
