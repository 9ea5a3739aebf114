# trierouter

A compact HTTP request router built on a radix trie. Routes may hold static
segments, named parameters (`{id}`), regular-expression parameters
(`{id:[0-9]+}`) and a trailing catch-all (`*`). Routers take middleware stacks,
inline middleware, groups and mounted sub-routers, and have custom handlers for
"not found" and "method not allowed".

## Installing

```
pip install .
```

Running the tests needs the `test` extra (`pip install .[test]`, then `pytest`).

## Handlers and middleware

A handler is any callable taking `(w, r)`: a response writer and a request.
A middleware is a callable that takes a handler and returns a new one.

The package has two modules:

- `trierouter.mux` holds the router `Mux`, the `Request` and
  `ResponseRecorder` types, and the helpers `chain`, `route_context`,
  `url_param` and `not_found`.
- `trierouter.tree` holds the radix tree (`Node`), the routing context
  (`RouteContext`, `RouteParams`), `Route`, `ChainHandler`, and the functions
  `register_method`, `method_type`, `all_methods`, `pattern_param_keys` and
  `walk`.

```python
from trierouter.mux import Mux, Request, ResponseRecorder, url_param

def logger(next_handler):
    def handler(w, r):
        print(r.method, r.path)
        next_handler(w, r)
    return handler

router = Mux()
router.use(logger)

def show_article(w, r):
    w.write(f"article {url_param(r, 'id')}")

router.get("/articles/{id:[0-9]+}", show_article)

def admin_routes(sub):
    sub.get("/", lambda w, r: w.write(b"admin index"))
    sub.get("/users/{name}", lambda w, r: w.write(url_param(r, "name")))

router.route("/admin", admin_routes)

w = ResponseRecorder()
router(w, Request("GET", "/articles/42"))
print(w.status, w.text())   # 200 article 42
```

`Request` is an immutable dataclass (`method`, `path`, `raw_path`, `headers`,
`body`, `context`). Middleware passes request-scoped values on with
`r.with_value(key, value)`, which returns a new request, and handlers read
them with `r.value(key)`. `ResponseRecorder` keeps `status`, `headers` and
`body`; `write` takes `str` or `bytes`, and `text()` decodes the body.

## Routing features

- `get`, `post`, `put`, `patch`, `delete`, `head`, `options`, `connect`,
  `trace` register a handler for one method; `handle` registers it for all.
- `method("BOO", pattern, handler)` works for custom methods once they are
  registered with `trierouter.tree.register_method("BOO")`; an unknown method
  name raises `ValueError`.
- `with_(*middlewares)` returns an inline router whose routes get extra
  middleware; `group(fn)` does the same with a fresh stack.
- `mount(pattern, handler)` attaches another router or handler below a path;
  `route(pattern, fn)` builds and mounts a new sub-router in one step.
- `not_found(handler)` and `method_not_allowed(handler)` set custom responders,
  which are passed down to mounted sub-routers that have none of their own.
  By default a miss answers 404 with `404 page not found\n`, and a path that
  exists for other methods answers 405 with an empty body. A request whose
  method is not registered also gets the 405 responder.
- `url_param(r, key)` returns a matched parameter (or `""`); the catch-all is
  available as `"*"`. `route_context(r)` returns the request's
  `RouteContext`, whose `route_patterns` lists the patterns matched on the way.
- `match(rctx, method, path)` checks whether a route exists without running
  it; it fills in the given `RouteContext`.
- `routes()` lists the registered `Route` entries, and
  `trierouter.tree.walk(router, fn)` calls `fn(method, route, handler,
  *middlewares)` for every method and full route pattern, with the middleware
  that applies to it.

All middleware must be registered with `use` before the first route is added;
adding it later raises `RuntimeError`. Mounting twice on the same path, a
pattern not starting with `/`, a `*` anywhere but at the end of a pattern, a
duplicate parameter name or an invalid parameter regular expression raise
`ValueError`.

## What it does not do

The package has no HTTP server and no WSGI or ASGI adapter. It routes
`Request` objects to handlers in-process; connecting it to a network server,
parsing real HTTP traffic and sending responses are left to the caller.