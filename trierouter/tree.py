"""Radix tree used to store and look up routing patterns."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, NamedTuple, Optional

Handler = Callable[..., Any]
Middleware = Callable[[Handler], Handler]

_INT_SIZE = 64


class MethodType(enum.IntFlag):
    """Bit flags for the built-in HTTP methods."""

    STUB = 1
    CONNECT = 2
    DELETE = 4
    GET = 8
    HEAD = 16
    OPTIONS = 32
    PATCH = 64
    POST = 128
    PUT = 256
    TRACE = 512


class NodeType(enum.IntEnum):
    """Kinds of tree nodes, in the order they are searched."""

    STATIC = 0
    REGEXP = 1
    PARAM = 2
    CATCH_ALL = 3


class _MethodRegistry:
    """The table of supported methods and the mask matching all of them."""

    def __init__(self) -> None:
        self.by_name: dict[str, int] = {
            m.name: int(m) for m in MethodType if m is not MethodType.STUB
        }
        self.all = 0
        for value in self.by_name.values():
            self.all |= value

    def name_of(self, method: int) -> str:
        for name, value in self.by_name.items():
            if value == method:
                return name
        return ""


_registry = _MethodRegistry()


def register_method(method: str) -> None:
    """Add support for a custom HTTP method."""
    if not method:
        return
    method = method.upper()
    if method in _registry.by_name:
        return
    count = len(_registry.by_name)
    if count > _INT_SIZE - 2:
        raise ValueError(f"max number of methods reached ({_INT_SIZE})")
    value = 2 << count
    _registry.by_name[method] = value
    _registry.all |= value


def method_type(method: str) -> int:
    """Return the flag of a supported method name (case sensitive)."""
    try:
        return _registry.by_name[method]
    except KeyError:
        raise ValueError(f"'{method}' http method is not supported.") from None


def all_methods() -> int:
    """Return the mask that matches every supported method."""
    return _registry.all


@dataclass
class RouteParams:
    """Ordered URL parameter keys and values."""

    keys: list[str] = field(default_factory=list)
    values: list[str] = field(default_factory=list)

    def add(self, key: str, value: str) -> None:
        self.keys.append(key)
        self.values.append(value)


@dataclass
class RouteContext:
    """Routing state of a single request."""

    routes: Any = None
    route_path: str = ""
    route_method: str = ""
    url_params: RouteParams = field(default_factory=RouteParams)
    route_patterns: list[str] = field(default_factory=list)
    route_params: RouteParams = field(default_factory=RouteParams)
    route_pattern: str = ""
    method_not_allowed: bool = False
    parent_ctx: Any = None

    def reset(self) -> None:
        """Clear the context so that it can serve another request."""
        self.routes = None
        self.route_path = ""
        self.route_method = ""
        self.route_patterns.clear()
        self.url_params.keys.clear()
        self.url_params.values.clear()
        self.route_pattern = ""
        self.route_params.keys.clear()
        self.route_params.values.clear()
        self.method_not_allowed = False
        self.parent_ctx = None

    def url_param(self, key: str) -> str:
        """Return the latest value recorded for ``key``, or an empty string."""
        pairs = list(zip(self.url_params.keys, self.url_params.values))
        for name, value in reversed(pairs):
            if name == key:
                return value
        return ""


@dataclass(eq=False)
class ChainHandler:
    """An endpoint handler wrapped by a list of middlewares."""

    middlewares: list[Middleware]
    endpoint: Handler
    chain: Handler = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.middlewares = list(self.middlewares)
        handler = self.endpoint
        for middleware in reversed(self.middlewares):
            handler = middleware(handler)
        self.chain = handler

    def __call__(self, w: Any, r: Any) -> Any:
        return self.chain(w, r)


@dataclass(eq=False)
class Endpoint:
    """The handler registered for one method on a node."""

    handler: Optional[Handler] = None
    pattern: str = ""
    param_keys: list[str] = field(default_factory=list)


@dataclass
class Route:
    """Routing information of one pattern; handlers are keyed by method name."""

    sub_routes: Any
    handlers: dict[str, Handler]
    pattern: str


class _Segment(NamedTuple):
    typ: NodeType
    key: str
    rexpat: str
    tail: str
    start: int
    end: int


def _next_segment(pattern: str) -> _Segment:
    ps = pattern.find("{")
    ws = pattern.find("*")

    if ps < 0 and ws < 0:
        return _Segment(NodeType.STATIC, "", "", "", 0, len(pattern))

    if ps >= 0 and ws >= 0 and ws < ps:
        raise ValueError(
            "wildcard '*' must be the last pattern in a route, otherwise use a '{param}'"
        )

    tail = "/"
    if ps >= 0:
        typ = NodeType.PARAM
        depth = 0
        pe = ps
        for offset, char in enumerate(pattern[ps:]):
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    pe = ps + offset
                    break
        if pe == ps:
            raise ValueError("route param closing delimiter '}' is missing")

        key = pattern[ps + 1 : pe]
        pe += 1
        if pe < len(pattern):
            tail = pattern[pe]

        rexpat = ""
        colon = key.find(":")
        if colon >= 0:
            typ = NodeType.REGEXP
            rexpat = key[colon + 1 :]
            key = key[:colon]

        if rexpat:
            if not rexpat.startswith("^"):
                rexpat = "^" + rexpat
            if not rexpat.endswith("$"):
                rexpat += "$"

        return _Segment(typ, key, rexpat, tail, ps, pe)

    if ws < len(pattern) - 1:
        raise ValueError(
            "wildcard '*' must be the last value in a route. "
            "trim trailing text or use a '{param}' instead"
        )
    return _Segment(NodeType.CATCH_ALL, "*", "", "", ws, len(pattern))


def pattern_param_keys(pattern: str) -> list[str]:
    """Return the parameter keys of a routing pattern in order."""
    rest = pattern
    keys: list[str] = []
    while True:
        seg = _next_segment(rest)
        if seg.typ == NodeType.STATIC:
            return keys
        if seg.key in keys:
            raise ValueError(
                f"routing pattern '{pattern}' contains duplicate param key, '{seg.key}'"
            )
        keys.append(seg.key)
        rest = rest[seg.end :]


def _longest_prefix(a: str, b: str) -> int:
    count = 0
    for x, y in zip(a, b):
        if x != y:
            break
        count += 1
    return count


def _sort_nodes(nodes: list[Node]) -> None:
    nodes.sort(key=lambda n: n.label)
    # Param nodes with a '/' tail are tried last.
    for i in range(len(nodes) - 1, -1, -1):
        if nodes[i].typ > NodeType.STATIC and nodes[i].tail == "/":
            nodes[i], nodes[-1] = nodes[-1], nodes[i]
            return


def _search_edge(nodes: list[Node], typ: NodeType, label: str) -> Optional[Node]:
    if typ == NodeType.CATCH_ALL:
        return nodes[0]
    lo, hi, idx = 0, len(nodes) - 1, 0
    while lo <= hi:
        idx = lo + (hi - lo) // 2
        current = nodes[idx].label
        if label > current:
            lo = idx + 1
        elif label < current:
            hi = idx - 1
        else:
            break
    return nodes[idx] if nodes[idx].label == label else None


@dataclass(eq=False)
class Node:
    """A node of the routing radix tree."""

    typ: NodeType = NodeType.STATIC
    label: str = ""
    tail: str = ""
    prefix: str = ""
    rex: Optional[re.Pattern] = None
    endpoints: Optional[dict[int, Endpoint]] = None
    subroutes: Any = None
    children: list[list[Node]] = field(
        default_factory=lambda: [[] for _ in NodeType], repr=False
    )

    def insert_route(self, method: int, pattern: str, handler: Handler) -> Node:
        """Register ``handler`` for ``method`` on ``pattern``; return the leaf node."""
        n: Node = self
        search = pattern
        while True:
            if not search:
                n._set_endpoint(method, handler, pattern)
                return n

            label = search[0]
            seg_typ = NodeType.STATIC
            seg_tail = ""
            seg_rexpat = ""
            seg_end = 0
            if label in "{*":
                seg = _next_segment(search)
                seg_typ, seg_rexpat, seg_tail, seg_end = seg.typ, seg.rexpat, seg.tail, seg.end

            prefix = seg_rexpat if seg_typ == NodeType.REGEXP else ""

            parent = n
            edge = n._get_edge(seg_typ, label, seg_tail, prefix)

            if edge is None:
                child = Node(label=label, tail=seg_tail, prefix=search)
                leaf = parent._add_child(child, search)
                leaf._set_endpoint(method, handler, pattern)
                return leaf

            n = edge
            if n.typ > NodeType.STATIC:
                search = search[seg_end:]
                continue

            common = _longest_prefix(search, n.prefix)
            if common == len(n.prefix):
                search = search[common:]
                continue

            # Split the node.
            child = Node(typ=NodeType.STATIC, prefix=search[:common])
            parent._replace_child(search[0], seg_tail, child)

            n.label = n.prefix[common]
            n.prefix = n.prefix[common:]
            child._add_child(n, n.prefix)

            search = search[common:]
            if not search:
                child._set_endpoint(method, handler, pattern)
                return child

            subchild = Node(typ=NodeType.STATIC, label=search[0], prefix=search)
            leaf = child._add_child(subchild, search)
            leaf._set_endpoint(method, handler, pattern)
            return leaf

    def _add_child(self, child: Node, prefix: str) -> Node:
        search = prefix
        leaf = child
        seg = _next_segment(search)

        if seg.typ != NodeType.STATIC:
            if seg.typ == NodeType.REGEXP:
                try:
                    rex = re.compile(seg.rexpat)
                except re.error:
                    raise ValueError(
                        f"invalid regexp pattern '{seg.rexpat}' in route param"
                    ) from None
                child.prefix = seg.rexpat
                child.rex = rex

            start = seg.start
            if start == 0:
                child.typ = seg.typ
                start = len(search) if seg.typ == NodeType.CATCH_ALL else seg.end
                child.tail = seg.tail
                if start != len(search):
                    search = search[start:]
                    nxt = Node(typ=NodeType.STATIC, label=search[0], prefix=search)
                    leaf = child._add_child(nxt, search)
            elif start > 0:
                child.typ = NodeType.STATIC
                child.prefix = search[:start]
                child.rex = None
                search = search[start:]
                nxt = Node(typ=seg.typ, label=search[0], tail=seg.tail)
                leaf = child._add_child(nxt, search)

        group = self.children[child.typ]
        group.append(child)
        _sort_nodes(group)
        return leaf

    def _replace_child(self, label: str, tail: str, child: Node) -> None:
        group = self.children[child.typ]
        for i, existing in enumerate(group):
            if existing.label == label and existing.tail == tail:
                child.label = label
                child.tail = tail
                group[i] = child
                return
        raise RuntimeError("replacing missing child")

    def _get_edge(self, typ: NodeType, label: str, tail: str, prefix: str) -> Optional[Node]:
        for candidate in self.children[typ]:
            if candidate.label == label and candidate.tail == tail:
                if typ == NodeType.REGEXP and candidate.prefix != prefix:
                    continue
                return candidate
        return None

    def _endpoint(self, method: int) -> Endpoint:
        assert self.endpoints is not None
        return self.endpoints.setdefault(method, Endpoint())

    def _set_endpoint(self, method: int, handler: Handler, pattern: str) -> None:
        if self.endpoints is None:
            self.endpoints = {}
        param_keys = pattern_param_keys(pattern)
        stub = int(MethodType.STUB)
        if method & stub == stub:
            self._endpoint(stub).handler = handler

        mask = _registry.all
        if method & mask == mask:
            targets = [mask, *_registry.by_name.values()]
        else:
            targets = [method]
        for target in targets:
            ep = self._endpoint(target)
            ep.handler = handler
            ep.pattern = pattern
            ep.param_keys = param_keys

    def find_route(
        self, rctx: RouteContext, method: int, path: str
    ) -> tuple[Optional[Node], Optional[dict[int, Endpoint]], Optional[Handler]]:
        """Look up ``path``; return the node, its endpoints and the handler found."""
        rctx.route_pattern = ""
        rctx.route_params.keys.clear()
        rctx.route_params.values.clear()

        found = self._find(rctx, method, path)
        if found is None or found.endpoints is None:
            return None, None, None

        rctx.url_params.keys.extend(rctx.route_params.keys)
        rctx.url_params.values.extend(rctx.route_params.values)

        ep = found.endpoints[method]
        if ep.pattern:
            rctx.route_pattern = ep.pattern
            rctx.route_patterns.append(ep.pattern)

        return found, found.endpoints, ep.handler

    def _leaf_match(self, rctx: RouteContext, method: int) -> bool:
        if not self.is_leaf():
            return False
        ep = self.endpoints.get(method)  # type: ignore[union-attr]
        if ep is not None and ep.handler is not None:
            rctx.route_params.keys.extend(ep.param_keys)
            return True
        rctx.method_not_allowed = True
        return False

    def _find(self, rctx: RouteContext, method: int, path: str) -> Optional[Node]:
        values = rctx.route_params.values
        search = path

        for typ, nodes in zip(NodeType, self.children):
            if not nodes:
                continue

            xn: Optional[Node] = None
            xsearch = search
            label = search[0] if search else ""

            if typ == NodeType.STATIC:
                xn = _search_edge(nodes, typ, label)
                if xn is None or not xsearch.startswith(xn.prefix):
                    continue
                xsearch = xsearch[len(xn.prefix) :]

            elif typ in (NodeType.PARAM, NodeType.REGEXP):
                if not xsearch:
                    continue

                for xn in nodes:
                    p = xsearch.find(xn.tail) if xn.tail else -1
                    if p < 0:
                        if xn.tail == "/":
                            p = len(xsearch)
                        else:
                            continue
                    elif typ == NodeType.REGEXP and p == 0:
                        continue

                    if typ == NodeType.REGEXP and xn.rex is not None:
                        if not xn.rex.search(xsearch[:p]):
                            continue
                    elif "/" in xsearch[:p]:
                        # avoid a match across path segments
                        continue

                    prevlen = len(values)
                    values.append(xsearch[:p])
                    xsearch = xsearch[p:]

                    if not xsearch and xn._leaf_match(rctx, method):
                        return xn

                    found = xn._find(rctx, method, xsearch)
                    if found is not None:
                        return found

                    del values[prevlen:]
                    xsearch = search

                values.append("")

            else:
                values.append(search)
                xn = nodes[0]
                xsearch = ""

            if xn is None:
                continue

            if not xsearch and xn._leaf_match(rctx, method):
                return xn

            found = xn._find(rctx, method, xsearch)
            if found is not None:
                return found

            if xn.typ > NodeType.STATIC and values:
                values.pop()

        return None

    def is_leaf(self) -> bool:
        return self.endpoints is not None

    def find_pattern(self, pattern: str) -> bool:
        """Tell whether a routing pattern is already present in the tree."""
        for nodes in self.children:
            if not nodes:
                continue

            n = _search_edge(nodes, nodes[0].typ, pattern[0])
            if n is None:
                continue

            if n.typ == NodeType.STATIC:
                idx = _longest_prefix(pattern, n.prefix)
                if idx < len(n.prefix):
                    continue
            elif n.typ in (NodeType.PARAM, NodeType.REGEXP):
                idx = pattern.find("}") + 1
            else:
                idx = _longest_prefix(pattern, "*")

            rest = pattern[idx:]
            if not rest:
                return True
            return n.find_pattern(rest)
        return False

    def _walk(self) -> Iterator[Node]:
        if self.endpoints is not None or self.subroutes is not None:
            yield self
        for group in self.children:
            for child in group:
                yield from child._walk()

    def routes(self) -> list[Route]:
        """Return the routing information stored below this node."""
        result: list[Route] = []
        stub = int(MethodType.STUB)
        for n in self._walk():
            eps = n.endpoints or {}
            stub_ep = eps.get(stub)
            if stub_ep is not None and stub_ep.handler is not None and n.subroutes is None:
                continue

            by_pattern: dict[str, dict[int, Endpoint]] = {}
            for mt, ep in eps.items():
                if ep.pattern:
                    by_pattern.setdefault(ep.pattern, {})[mt] = ep

            for pattern, group in by_pattern.items():
                handlers: dict[str, Handler] = {}
                any_ep = group.get(_registry.all)
                if any_ep is not None and any_ep.handler is not None:
                    handlers["*"] = any_ep.handler
                for mt, ep in group.items():
                    if ep.handler is None:
                        continue
                    name = _registry.name_of(mt)
                    if name:
                        handlers[name] = ep.handler
                result.append(Route(n.subroutes, handlers, pattern))
        return result


def walk(routes: Any, walk_fn: Callable[..., Any]) -> None:
    """Call ``walk_fn(method, route, handler, *middlewares)`` for every route.

    ``routes`` is any object with ``routes()`` and ``middlewares()`` methods.
    An exception raised by ``walk_fn`` stops the walk.
    """
    _walk_routes(routes, walk_fn, "", [])


def _walk_routes(
    routes: Any, walk_fn: Callable[..., Any], parent_route: str, parent_mw: list[Middleware]
) -> None:
    for route in routes.routes():
        mws = [*parent_mw, *routes.middlewares()]

        if route.sub_routes is not None:
            _walk_routes(route.sub_routes, walk_fn, parent_route + route.pattern, mws)
            continue

        for method, handler in route.handlers.items():
            if method == "*":
                continue
            full_route = (parent_route + route.pattern).replace("/*/", "/")
            if isinstance(handler, ChainHandler):
                walk_fn(method, full_route, handler.endpoint, *mws, *handler.middlewares)
            else:
                walk_fn(method, full_route, handler, *mws)