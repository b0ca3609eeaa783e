"""Structured nginx configuration for routing previews to tenant containers.

The configuration is modelled as a small tree of immutable nodes. The base
template contains exactly one RoutesSlot; rendering replaces that slot with
one ``location`` block per route. Routes are always regenerated from the full
set of running containers, never patched into previously rendered text.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass

from sandbox.profiles import DeploymentProfile
from sandbox.records import ContainerRecord

INDENT = "    "

_SAFE_PATH = re.compile(r"^/[A-Za-z0-9_.\-/]*/$")
_SAFE_HOST = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


def quote(value: str) -> str:
    """Double-quote an nginx argument."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass(frozen=True)
class Directive:
    name: str
    args: tuple[str, ...] = ()

    def render(self, depth: int) -> list[str]:
        parts = " ".join((self.name, *self.args))
        return [f"{INDENT * depth}{parts};"]


@dataclass(frozen=True)
class Comment:
    text: str

    def render(self, depth: int) -> list[str]:
        return [f"{INDENT * depth}# {self.text}"]


@dataclass(frozen=True)
class RoutesSlot:
    """Placeholder for the tenant location blocks.

    Attributes:
        location_directives: Extra directives added to every tenant location
            (iframe headers, websocket upgrade).
    """

    location_directives: tuple[Directive, ...] = ()


@dataclass(frozen=True)
class Block:
    name: str
    args: tuple[str, ...] = ()
    children: tuple["Node", ...] = ()


Node = Directive | Comment | Block | RoutesSlot


@dataclass(frozen=True, order=True)
class ProxyRoute:
    """A path prefix routed to a tenant container's dev server."""

    match_path: str
    upstream_container_name: str
    upstream_port: int
    tenant_key: str


@dataclass(frozen=True)
class ProxyConfigDocument:
    """Rendered configuration plus the routes it was rendered from."""

    text: str
    routes: tuple[ProxyRoute, ...]


PROXY_HEADERS: tuple[Directive, ...] = (
    Directive("proxy_set_header", ("Host", "$host")),
    Directive("proxy_set_header", ("X-Real-IP", "$remote_addr")),
    Directive("proxy_set_header", ("X-Forwarded-For", "$proxy_add_x_forwarded_for")),
)

WEBSOCKET_HEADERS: tuple[Directive, ...] = (
    Directive("proxy_http_version", ("1.1",)),
    Directive("proxy_set_header", ("Upgrade", "$http_upgrade")),
    Directive("proxy_set_header", ("Connection", quote("upgrade"))),
)


def routes_from_snapshot(records: Iterable[ContainerRecord]) -> tuple[ProxyRoute, ...]:
    """Derive routes from running containers only, in a stable order."""
    routes = {
        ProxyRoute(
            match_path=r.proxy_path,
            upstream_container_name=r.container_name,
            upstream_port=r.internal_port,
            tenant_key=r.tenant_key,
        )
        for r in records
        if r.is_running
    }
    return tuple(sorted(routes))


def base_template(profile: DeploymentProfile, main_app_upstream: str) -> Block:
    """Build the static part of the configuration for a profile.

    ``main_app_upstream`` is the ``host:port`` of the IDE frontend, served at /.
    """
    http_children: list[Node] = []
    location_extras: list[Directive] = []
    main_location: list[Node] = [Directive("proxy_pass", ("http://main-app",)), *PROXY_HEADERS]

    if profile.frame_ancestors:
        csp = "frame-ancestors " + " ".join(profile.frame_ancestors)
        http_children.append(
            Directive("add_header", ("Content-Security-Policy", quote(csp), "always"))
        )
        main_location.append(Directive("proxy_hide_header", ("X-Frame-Options",)))
        location_extras += [
            Directive("proxy_hide_header", ("X-Frame-Options",)),
            Directive("proxy_hide_header", ("Content-Security-Policy",)),
        ]
    location_extras += WEBSOCKET_HEADERS

    http_children += [
        Block("upstream", ("main-app",), (Directive("server", (main_app_upstream,)),)),
        Block(
            "server",
            children=(
                Directive("listen", ("80",)),
                Directive("server_name", ("localhost",)),
                Block("location", ("/",), tuple(main_location)),
                Comment("tenant preview routes"),
                RoutesSlot(tuple(location_extras)),
                Block(
                    "location",
                    ("/_next/webpack-hmr",),
                    (
                        Directive("proxy_pass", ("http://main-app",)),
                        *WEBSOCKET_HEADERS,
                        Directive("proxy_set_header", ("Host", "$host")),
                    ),
                ),
            ),
        ),
    ]

    return Block(
        "",
        children=(
            Block("events", children=(Directive("worker_connections", ("1024",)),)),
            Block("http", children=tuple(http_children)),
        ),
    )


def route_block(route: ProxyRoute, extras: tuple[Directive, ...]) -> Block:
    """The location block for one tenant route.

    Raises:
        ValueError: If the route contains characters unsafe in nginx syntax.
    """
    if not _SAFE_PATH.match(route.match_path):
        raise ValueError(f"Unsafe proxy path: {route.match_path!r}")
    if not _SAFE_HOST.match(route.upstream_container_name):
        raise ValueError(f"Unsafe upstream name: {route.upstream_container_name!r}")
    upstream = f"http://{route.upstream_container_name}:{route.upstream_port}/"
    return Block(
        "location",
        (route.match_path,),
        (Directive("proxy_pass", (upstream,)), *PROXY_HEADERS, *extras),
    )


def render(template: Block, routes: Iterable[ProxyRoute]) -> ProxyConfigDocument:
    """Render a template, substituting its RoutesSlot with ``routes``.

    Raises:
        ValueError: If the template does not contain exactly one RoutesSlot.
    """
    route_list = tuple(routes)
    slots = _count_slots(template)
    if slots != 1:
        raise ValueError(f"Template must contain exactly one routes slot, found {slots}")

    lines: list[str] = []
    for child in template.children:
        _render_node(child, 0, route_list, lines)
    return ProxyConfigDocument(text="\n".join(lines) + "\n", routes=route_list)


def _count_slots(node: Node) -> int:
    if isinstance(node, RoutesSlot):
        return 1
    if isinstance(node, Block):
        return sum(_count_slots(child) for child in node.children)
    return 0


def _render_node(node: Node, depth: int, routes: tuple[ProxyRoute, ...], out: list[str]) -> None:
    pad = INDENT * depth
    if isinstance(node, RoutesSlot):
        for route in routes:
            out.append(f"{pad}# tenant {route.tenant_key}")
            _render_node(route_block(route, node.location_directives), depth, routes, out)
    elif isinstance(node, Block):
        header = " ".join((node.name, *node.args))
        out.append(f"{pad}{header} {{")
        for child in node.children:
            _render_node(child, depth + 1, routes, out)
        out.append(f"{pad}}}")
    else:
        out.extend(node.render(depth))
