"""
Route Classifier

Maps request paths to the route group that protects them. The table is
resolved once at startup; anything not explicitly public falls back to the
default protected route.
"""

import json
import logging
import posixpath
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import unquote

from .admin_sessions import AdminSessionPolicy
from .collaborators import Role
from .ip_matcher import CompiledRanges

logger = logging.getLogger(__name__)


class SecurityLevel(str, Enum):
    BASIC = "basic"
    ENHANCED = "enhanced"
    ADMIN = "admin"


class RouteKind(str, Enum):
    BYPASS = "bypass"
    PUBLIC = "public"
    PROTECTED = "protected"
    REJECTED = "rejected"


ALL_ROLES = (Role.CUSTOMER.value, Role.STAFF.value, Role.ADMIN.value)


@dataclass(frozen=True)
class RouteConfig:
    """Access requirements for a group of path prefixes"""
    name: str
    path_prefixes: Tuple[str, ...]
    required_roles: Tuple[str, ...] = ALL_ROLES
    requires_mfa: bool = False
    ip_whitelist: Tuple[str, ...] = ()
    admin_session: Optional[AdminSessionPolicy] = None
    security_level: SecurityLevel = SecurityLevel.BASIC

    @property
    def is_admin_tier(self) -> bool:
        return self.security_level == SecurityLevel.ADMIN or (
            self.admin_session is not None and self.admin_session.required
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteConfig":
        """Build a route from its JSON form"""
        admin_session = data.get("admin_session")
        if admin_session is not None:
            admin_session = AdminSessionPolicy(
                required=admin_session.get("required", True),
                timeout=timedelta(minutes=admin_session.get("timeout_minutes", 30)),
                max_concurrent=admin_session.get("max_concurrent", 3),
            )
        return cls(
            name=data["name"],
            path_prefixes=tuple(data["path_prefixes"]),
            required_roles=tuple(data.get("required_roles", ALL_ROLES)),
            requires_mfa=data.get("requires_mfa", False),
            ip_whitelist=tuple(data.get("ip_whitelist", ())),
            admin_session=admin_session,
            security_level=SecurityLevel(data.get("security_level", "basic")),
        )


@dataclass(frozen=True)
class RouteMatch:
    """Classification of one path"""
    kind: RouteKind
    route: Optional[RouteConfig] = None
    prefix: Optional[str] = None


DEFAULT_ROUTE = RouteConfig(name="default", path_prefixes=())

DEFAULT_ROUTES: List[RouteConfig] = [
    RouteConfig(
        name="admin",
        path_prefixes=("/admin", "/api/admin", "/security"),
        required_roles=(Role.ADMIN.value,),
        requires_mfa=True,
        ip_whitelist=("127.0.0.1", "::1", "10.0.0.0/8", "192.168.1.0/24"),
        admin_session=AdminSessionPolicy(
            required=True, timeout=timedelta(minutes=30), max_concurrent=3
        ),
        security_level=SecurityLevel.ADMIN,
    ),
    RouteConfig(
        name="staff",
        path_prefixes=("/staff", "/api/staff"),
        required_roles=(Role.STAFF.value, Role.ADMIN.value),
        security_level=SecurityLevel.ENHANCED,
    ),
    RouteConfig(
        name="customer",
        path_prefixes=(
            "/dashboard", "/account", "/customize", "/orders", "/checkout",
            "/api/account", "/api/orders",
        ),
        required_roles=ALL_ROLES,
        security_level=SecurityLevel.BASIC,
    ),
]

DEFAULT_BYPASS_PREFIXES = ("/_next/", "/static/", "/assets/", "/public/", "/images/")
DEFAULT_BYPASS_FILES = ("/favicon.ico", "/robots.txt", "/sitemap.xml")
DEFAULT_BYPASS_EXTENSIONS = (
    ".js", ".css", ".map", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico",
    ".webp", ".avif", ".woff", ".woff2", ".ttf", ".eot",
)

DEFAULT_PUBLIC_PREFIXES = (
    "/products", "/categories", "/about", "/contact", "/cart",
    "/auth", "/api/auth", "/api/products", "/api/categories",
)

_PUBLIC = object()


_SLASHES = re.compile(r"/{2,}")
_MAX_DECODE_ROUNDS = 3


def canonical_path(path: str) -> Optional[str]:
    """Decoded, lower-cased path without dot segments or repeated slashes

    Returns None for paths that cannot be classified safely: dot-dot
    segments, NUL bytes or escapes still left after repeated decoding.
    """
    path = path.split("?", 1)[0].split("#", 1)[0]
    for _ in range(_MAX_DECODE_ROUNDS):
        decoded = unquote(path)
        if decoded == path:
            break
        path = decoded
    if unquote(path) != path or "\x00" in path:
        return None

    path = path.replace("\\", "/")
    if ".." in path.split("/"):
        return None

    path = posixpath.normpath(_SLASHES.sub("/", "/" + path))
    return path.lower()


def _table_prefix(prefix: str) -> str:
    canonical = canonical_path(prefix)
    if canonical is None:
        raise ValueError(f"Invalid route prefix: {prefix!r}")
    return canonical


def _segment_match(path: str, prefix: str) -> bool:
    """Prefix match on whole path segments, so /admin does not cover /administrator"""
    return path == prefix or path.startswith(prefix + "/")


def load_routes(path: Union[str, Path]) -> List[RouteConfig]:
    """Load route groups from a JSON file ({"routes": [...]} or a bare list)"""
    with open(path, "r") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("routes", [])
    routes = [RouteConfig.from_dict(item) for item in data]
    logger.info(f"Loaded {len(routes)} route groups from {path}")
    return routes


class RouteClassifier:
    """Classify paths as bypass, public or protected"""

    def __init__(self, routes: Optional[Iterable[RouteConfig]] = None,
                 public_prefixes: Iterable[str] = DEFAULT_PUBLIC_PREFIXES,
                 bypass_prefixes: Iterable[str] = DEFAULT_BYPASS_PREFIXES,
                 bypass_files: Iterable[str] = DEFAULT_BYPASS_FILES,
                 bypass_extensions: Iterable[str] = DEFAULT_BYPASS_EXTENSIONS,
                 default_route: RouteConfig = DEFAULT_ROUTE):
        self.routes: List[RouteConfig] = list(DEFAULT_ROUTES if routes is None else routes)
        self.bypass_prefixes = tuple(prefix.lower() for prefix in bypass_prefixes)
        self.bypass_files = frozenset(name.lower() for name in bypass_files)
        self.bypass_extensions = tuple(ext.lower() for ext in bypass_extensions)
        self.default_route = default_route

        # One table, longest prefix first
        table: List[Tuple[str, Any]] = []
        for route in self.routes:
            for prefix in route.path_prefixes:
                table.append((_table_prefix(prefix), route))
        for prefix in public_prefixes:
            table.append((_table_prefix(prefix), _PUBLIC))
        table.sort(key=lambda item: len(item[0]), reverse=True)
        self.table = table

        self.whitelists: Dict[str, CompiledRanges] = {
            route.name: CompiledRanges(route.ip_whitelist) for route in self.routes
        }
        self.whitelists.setdefault(
            default_route.name, CompiledRanges(default_route.ip_whitelist)
        )

        logger.info(
            f"Route table ready: {len(self.routes)} groups, {len(table)} prefixes"
        )

    def is_bypass(self, path: str) -> bool:
        """Static assets skip every auth check"""
        if path in self.bypass_files:
            return True
        if path.startswith(self.bypass_prefixes):
            return True
        last_segment = path.rsplit("/", 1)[-1].lower()
        return "." in last_segment and last_segment.endswith(self.bypass_extensions)

    def classify(self, path: str) -> RouteMatch:
        """Resolve a request path to its route"""
        path = canonical_path(path)
        if path is None:
            return RouteMatch(kind=RouteKind.REJECTED)

        if self.is_bypass(path):
            return RouteMatch(kind=RouteKind.BYPASS)

        if path == "/":
            return RouteMatch(kind=RouteKind.PUBLIC, prefix="/")

        for prefix, entry in self.table:
            if _segment_match(path, prefix):
                if entry is _PUBLIC:
                    return RouteMatch(kind=RouteKind.PUBLIC, prefix=prefix)
                return RouteMatch(kind=RouteKind.PROTECTED, route=entry, prefix=prefix)

        # No match: protected by default
        return RouteMatch(kind=RouteKind.PROTECTED, route=self.default_route)

    def whitelist_for(self, route: RouteConfig) -> CompiledRanges:
        compiled = self.whitelists.get(route.name)
        if compiled is None:
            compiled = self.whitelists[route.name] = CompiledRanges(route.ip_whitelist)
        return compiled

    def get_route(self, name: str) -> Optional[RouteConfig]:
        for route in self.routes:
            if route.name == name:
                return route
        return None
