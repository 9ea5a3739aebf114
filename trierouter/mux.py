"""HTTP request multiplexer built on the routing radix tree."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from .tree import (
    ChainHandler,
    Handler,
    Middleware,
    MethodType,
    Node,
    Route,
    RouteContext,
    all_methods,
    method_type,
)


class _ContextKey:
    """A private key for values stored in a request context."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"<context key {self.name}>"


ROUTE_CTX_KEY = _ContextKey("RouteContext")


@dataclass(frozen=True, eq=False)
class Request:
    """An immutable HTTP request carrying a context of request-scoped values."""

    method: str = "GET"
    path: str = "/"
    raw_path: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    context: Mapping[Any, Any] = field(default_factory=dict)

    def with_value(self, key: Any, value: Any) -> Request:
        """Return a copy of the request whose context also holds ``key``."""
        return dataclasses.replace(self, context={**self.context, key: value})

    def value(self, key: Any) -> Any:
        """Return the context value stored under ``key``, or None."""
        return self.context.get(key)


@dataclass
class ResponseRecorder:
    """Collects the status, headers and body written by a handler."""

    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytearray = field(default_factory=bytearray)
    wrote_header: bool = False

    def write_header(self, status: int) -> None:
        """Set the status code; only the first call has an effect."""
        if self.wrote_header:
            return
        self.status = status
        self.wrote_header = True

    def write(self, data: Any) -> int:
        """Append ``data`` (str or bytes) to the body."""
        if not self.wrote_header:
            self.write_header(200)
        if data is None:
            data = b""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.body.extend(data)
        return len(data)

    def text(self) -> str:
        """Return the body decoded as UTF-8."""
        return self.body.decode("utf-8")


def chain(middlewares: list[Middleware], handler: Handler) -> Handler:
    """Wrap ``handler`` with ``middlewares``, the first one outermost."""
    if not middlewares:
        return handler
    return ChainHandler(list(middlewares), handler)


def route_context(request: Request) -> Optional[RouteContext]:
    """Return the routing context of a request, if it has one."""
    return request.value(ROUTE_CTX_KEY)


def url_param(request: Request, key: str) -> str:
    """Return the URL parameter ``key`` of a routed request, or an empty string."""
    rctx = route_context(request)
    return rctx.url_param(key) if rctx is not None else ""


def not_found(w: Any, r: Request) -> None:
    """Reply with a plain 404 response."""
    w.headers["Content-Type"] = "text/plain; charset=utf-8"
    w.headers["X-Content-Type-Options"] = "nosniff"
    w.write_header(404)
    w.write("404 page not found\n")


def _method_not_allowed(w: Any, r: Request) -> None:
    w.write_header(405)
    w.write(b"")


def _is_routes(handler: Any) -> bool:
    return all(
        callable(getattr(handler, name, None)) for name in ("routes", "middlewares", "match")
    )


class Mux:
    """Routes requests through a radix tree to handlers and sub-routers."""

    def __init__(self) -> None:
        self._handler: Optional[Handler] = None
        self._tree = Node()
        self._method_not_allowed_handler: Optional[Handler] = None
        self._parent: Optional[Mux] = None
        self._not_found_handler: Optional[Handler] = None
        self._middlewares: list[Middleware] = []
        self._inline = False

    def __call__(self, w: Any, r: Request) -> None:
        self.serve_http(w, r)

    def serve_http(self, w: Any, r: Request) -> None:
        """Serve a request, creating a routing context unless a parent made one."""
        if self._handler is None:
            self.not_found_handler()(w, r)
            return

        if route_context(r) is not None:
            self._handler(w, r)
            return

        rctx = RouteContext()
        rctx.routes = self
        rctx.parent_ctx = r.context
        self._handler(w, r.with_value(ROUTE_CTX_KEY, rctx))

    def use(self, *middlewares: Middleware) -> None:
        """Append middlewares; they must all be added before any route."""
        if self._handler is not None:
            raise RuntimeError("all middlewares must be defined before routes on a mux")
        self._middlewares.extend(middlewares)

    def handle(self, pattern: str, handler: Handler) -> None:
        """Route ``pattern`` to ``handler`` for every method."""
        self._handle(all_methods(), pattern, handler)

    def method(self, method: str, pattern: str, handler: Handler) -> None:
        """Route ``pattern`` to ``handler`` for the named method."""
        self._handle(method_type(method.upper()), pattern, handler)

    def connect(self, pattern: str, handler: Handler) -> None:
        self._handle(MethodType.CONNECT, pattern, handler)

    def delete(self, pattern: str, handler: Handler) -> None:
        self._handle(MethodType.DELETE, pattern, handler)

    def get(self, pattern: str, handler: Handler) -> None:
        self._handle(MethodType.GET, pattern, handler)

    def head(self, pattern: str, handler: Handler) -> None:
        self._handle(MethodType.HEAD, pattern, handler)

    def options(self, pattern: str, handler: Handler) -> None:
        self._handle(MethodType.OPTIONS, pattern, handler)

    def patch(self, pattern: str, handler: Handler) -> None:
        self._handle(MethodType.PATCH, pattern, handler)

    def post(self, pattern: str, handler: Handler) -> None:
        self._handle(MethodType.POST, pattern, handler)

    def put(self, pattern: str, handler: Handler) -> None:
        self._handle(MethodType.PUT, pattern, handler)

    def trace(self, pattern: str, handler: Handler) -> None:
        self._handle(MethodType.TRACE, pattern, handler)

    def not_found(self, handler: Handler) -> None:
        """Set the handler for paths that match no route."""
        target: Mux = self
        h = handler
        if self._inline and self._parent is not None:
            target = self._parent
            h = ChainHandler(list(self._middlewares), handler)

        target._not_found_handler = h

        def propagate(sub: Mux) -> None:
            if sub._not_found_handler is None:
                sub.not_found(h)

        target._update_sub_routes(propagate)

    def method_not_allowed(self, handler: Handler) -> None:
        """Set the handler for routes that do not accept the request method."""
        target: Mux = self
        h = handler
        if self._inline and self._parent is not None:
            target = self._parent
            h = ChainHandler(list(self._middlewares), handler)

        target._method_not_allowed_handler = h

        def propagate(sub: Mux) -> None:
            if sub._method_not_allowed_handler is None:
                sub.method_not_allowed(h)

        target._update_sub_routes(propagate)

    def with_(self, *middlewares: Middleware) -> Mux:
        """Return an inline router whose routes also pass through ``middlewares``."""
        if not self._inline and self._handler is None:
            self._update_route_handler()

        mws = list(self._middlewares) if self._inline else []
        mws.extend(middlewares)

        im = Mux()
        im._inline = True
        im._parent = self
        im._tree = self._tree
        im._middlewares = mws
        im._not_found_handler = self._not_found_handler
        im._method_not_allowed_handler = self._method_not_allowed_handler
        return im

    def group(self, fn: Optional[Callable[[Mux], Any]]) -> Mux:
        """Create an inline router with a fresh middleware stack and pass it to ``fn``."""
        im = self.with_()
        if fn is not None:
            fn(im)
        return im

    def route(self, pattern: str, fn: Optional[Callable[[Mux], Any]]) -> Mux:
        """Build a new sub-router with ``fn`` and mount it on ``pattern``."""
        if fn is None:
            raise ValueError(f"attempting to Route() a nil subrouter on '{pattern}'")
        sub = Mux()
        fn(sub)
        self.mount(pattern, sub)
        return sub

    def mount(self, pattern: str, handler: Optional[Handler]) -> None:
        """Attach a handler or router beneath ``pattern``."""
        if handler is None:
            raise ValueError(f"attempting to Mount() a nil handler on '{pattern}'")

        if self._tree.find_pattern(pattern + "*") or self._tree.find_pattern(pattern + "/*"):
            raise ValueError(
                f"attempting to Mount() a handler on an existing path, '{pattern}'"
            )

        if isinstance(handler, Mux):
            if handler._not_found_handler is None and self._not_found_handler is not None:
                handler.not_found(self._not_found_handler)
            if (
                handler._method_not_allowed_handler is None
                and self._method_not_allowed_handler is not None
            ):
                handler.method_not_allowed(self._method_not_allowed_handler)

        def mount_handler(w: Any, r: Request) -> None:
            rctx = route_context(r)
            assert rctx is not None
            rctx.route_path = self._next_route_path(rctx)

            params = rctx.url_params
            last = len(params.keys) - 1
            if last >= 0 and params.keys[last] == "*" and len(params.values) > last:
                params.values[last] = ""

            handler(w, r)

        stub_all = all_methods() | int(MethodType.STUB)
        if not pattern or pattern[-1] != "/":
            self._handle(stub_all, pattern, mount_handler)
            self._handle(stub_all, pattern + "/", mount_handler)
            pattern += "/"

        subroutes = handler if _is_routes(handler) else None
        method = all_methods()
        if subroutes is not None:
            method |= int(MethodType.STUB)
        node = self._handle(method, pattern + "*", mount_handler)
        if subroutes is not None:
            node.subroutes = subroutes

    def routes(self) -> list[Route]:
        """Return the routing information of this router's tree."""
        return self._tree.routes()

    def middlewares(self) -> list[Middleware]:
        """Return the middleware stack of this router."""
        return list(self._middlewares)

    def match(self, rctx: RouteContext, method: str, path: str) -> bool:
        """Tell whether a handler exists for ``method`` and ``path``; updates ``rctx``."""
        try:
            mt = method_type(method)
        except ValueError:
            return False

        node, _, handler = self._tree.find_route(rctx, mt, path)
        if node is not None and node.subroutes is not None:
            rctx.route_path = self._next_route_path(rctx)
            return node.subroutes.match(rctx, method, rctx.route_path)
        return handler is not None

    def not_found_handler(self) -> Handler:
        """Return the handler used when no route matches."""
        return self._not_found_handler or not_found

    def method_not_allowed_handler(self) -> Handler:
        """Return the handler used when a route does not accept the method."""
        return self._method_not_allowed_handler or _method_not_allowed

    def _handle(self, method: int, pattern: str, handler: Handler) -> Node:
        if not pattern or pattern[0] != "/":
            raise ValueError(f"routing pattern must begin with '/' in '{pattern}'")

        if not self._inline and self._handler is None:
            self._update_route_handler()

        if self._inline:
            self._handler = self._route_http
            h: Handler = ChainHandler(list(self._middlewares), handler)
        else:
            h = handler

        return self._tree.insert_route(int(method), pattern, h)

    def _route_http(self, w: Any, r: Request) -> None:
        rctx = route_context(r)
        assert rctx is not None

        route_path = rctx.route_path or r.raw_path or r.path or "/"

        if not rctx.route_method:
            rctx.route_method = r.method
        try:
            method = method_type(rctx.route_method)
        except ValueError:
            self.method_not_allowed_handler()(w, r)
            return

        _, _, handler = self._tree.find_route(rctx, method, route_path)
        if handler is not None:
            handler(w, r)
            return
        if rctx.method_not_allowed:
            self.method_not_allowed_handler()(w, r)
        else:
            self.not_found_handler()(w, r)

    @staticmethod
    def _next_route_path(rctx: RouteContext) -> str:
        params = rctx.route_params
        last = len(params.keys) - 1
        if last >= 0 and params.keys[last] == "*" and len(params.values) > last:
            return "/" + params.values[last]
        return "/"

    def _update_sub_routes(self, fn: Callable[[Mux], None]) -> None:
        for route in self._tree.routes():
            if isinstance(route.sub_routes, Mux):
                fn(route.sub_routes)

    def _update_route_handler(self) -> None:
        self._handler = chain(self._middlewares, self._route_http)