"""Zone generation.

A zone is a full copy of the source application in which every page except
one has been deleted, so that compiling it yields a build containing exactly
one user-facing route. Layouts, loading and error boundaries are never
touched.
"""

from dataclasses import dataclass
import hashlib
import logging
import os
import pathlib
import re
import time

from route_isolator.conventions import FrameworkConventions
from route_isolator.errors import NotFoundError
from route_isolator.fsutil import CopyStats, copy_tree_filtered, remove_path

_DNS1123_INVALID_RE: re.Pattern[str] = re.compile(r"[^a-z0-9-]+")
_DNS1123_MAX_LEN: int = 63
_ROUTE_HASH_LEN: int = 8


@dataclass(frozen=True, slots=True)
class RouteDescriptor:
    """A user-facing route of the source application.

    :ivar name: Route name (the page's directory relative to the route dir, or the root sentinel).
    :ivar source_dir: Directory holding the page file.
    """

    name: str
    source_dir: pathlib.Path


def sanitize_route_name(route_name: str) -> str:
    """Lowercase a route name and replace path separators with dashes."""

    return route_name.replace("/", "-").lower()


def to_dns1123_label(text: str) -> str:
    """Convert arbitrary text into a Kubernetes DNS-1123 label.

    :param text: Input text.
    :returns: Lowercase alphanumerics and dashes, no leading/trailing dash,
        at most 63 characters; ``default`` if nothing usable remains.
    """

    replaced: str = _DNS1123_INVALID_RE.sub("-", text.lower())
    label: str = replaced.strip("-")[0:_DNS1123_MAX_LEN].rstrip("-")
    return label or "default"


def route_hash(route_name: str) -> str:
    """Return a short stable hash of a route name."""

    return hashlib.sha1(route_name.encode("utf-8")).hexdigest()[0:_ROUTE_HASH_LEN]


def service_name_for(app_name: str, route_name: str, *, disambiguate: bool = False) -> str:
    """Return the deployable service name of a route.

    With ``disambiguate`` a hash of the unsanitized route name is appended, so
    routes that sanitize to the same name still get distinct services.
    """

    label: str = to_dns1123_label(f"{app_name}-{sanitize_route_name(route_name)}")
    if disambiguate is False:
        return label
    suffix: str = route_hash(route_name)
    return f"{label[0:_DNS1123_MAX_LEN - len(suffix) - 1].rstrip('-')}-{suffix}"


def zone_name_for(app_name: str, route_name: str, *, disambiguate: bool = False) -> str:
    """Return the zone directory name of a route (see :func:`service_name_for`)."""

    name: str = f"{app_name}-{sanitize_route_name(route_name)}"
    if disambiguate is False:
        return name
    return f"{name}-{route_hash(route_name)}"


def colliding_routes(app_name: str, routes: list[str]) -> set[str]:
    """Return the routes whose service or zone name is shared with another route.

    Zone names map to service names many-to-one, so grouping by service name
    also catches every zone collision.
    """

    groups: dict[str, list[str]] = {}
    for route in routes:
        groups.setdefault(service_name_for(app_name, route), []).append(route)
    return {route for members in groups.values() if len(members) > 1 for route in members}


def find_route_dir(app_dir: pathlib.Path, conventions: FrameworkConventions) -> pathlib.Path | None:
    """Return the first existing route-definition directory of an app.

    :param app_dir: Application source directory.
    :param conventions: Framework conventions.
    :returns: Route directory, or ``None`` if the app has none.
    """

    for rel in conventions.route_dirs:
        candidate: pathlib.Path = app_dir / rel
        if candidate.is_dir() is True:
            return candidate
    return None


def _route_of(page_path: pathlib.Path, route_dir: pathlib.Path, conventions: FrameworkConventions) -> str:
    rel: str = page_path.parent.relative_to(route_dir).as_posix()
    if rel == ".":
        return conventions.root_route_name
    return rel


def _iter_page_files(route_dir: pathlib.Path, conventions: FrameworkConventions) -> list[pathlib.Path]:
    pages: list[pathlib.Path] = []
    names: set[str] = set(conventions.page_file_names)
    for root_str, dirs, files in os.walk(route_dir, topdown=True):
        dirs.sort()
        for name in sorted(files):
            if name in names:
                pages.append(pathlib.Path(root_str) / name)
    return pages


def discover_routes(
    source_app_dir: pathlib.Path,
    conventions: FrameworkConventions | None = None,
) -> list[RouteDescriptor]:
    """Discover the user-facing routes of a source application.

    :param source_app_dir: Application source directory.
    :param conventions: Framework conventions (defaults apply if omitted).
    :returns: Routes sorted by name, one per page directory.
    :raises NotFoundError: If the app has no route-definition directory.
    """

    if conventions is None:
        conventions = FrameworkConventions()

    route_dir: pathlib.Path | None = find_route_dir(source_app_dir, conventions)
    if route_dir is None:
        raise NotFoundError(
            f"No route directory ({', '.join(conventions.route_dirs)}) found in {source_app_dir}"
        )

    routes: dict[str, RouteDescriptor] = {}
    for page in _iter_page_files(route_dir, conventions):
        name: str = _route_of(page, route_dir, conventions)
        if name not in routes:
            routes[name] = RouteDescriptor(name=name, source_dir=page.parent)
    return [routes[name] for name in sorted(routes)]


def generate_zone(
    *,
    source_app_dir: pathlib.Path,
    route_name: str,
    work_dir: pathlib.Path,
    app_name: str | None = None,
    conventions: FrameworkConventions | None = None,
    zone_name: str | None = None,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Clone the source application and prune it down to a single route.

    :param source_app_dir: Application source directory.
    :param route_name: Route to keep (the root route uses the sentinel name).
    :param work_dir: Directory zones are generated in.
    :param app_name: Zone name prefix (defaults to the source directory name).
    :param conventions: Framework conventions (defaults apply if omitted).
    :param zone_name: Zone directory name override (see :func:`zone_name_for`).
    :param logger: Optional logger.
    :returns: Zone directory, ``<work_dir>/<app>-<sanitized route>`` by default.
    :raises NotFoundError: If the source directory does not exist or the route has no page file.
    """

    if logger is None:
        logger = logging.getLogger("route_isolator")
    if conventions is None:
        conventions = FrameworkConventions()
    if source_app_dir.is_dir() is False:
        raise NotFoundError(f"Source application directory does not exist: {source_app_dir}")

    if app_name is None:
        app_name = source_app_dir.resolve().name
    zone_dir: pathlib.Path = work_dir / (zone_name or zone_name_for(app_name, route_name))

    excludes: set[str] = set(conventions.zone_excludes)
    src_abs: pathlib.Path = source_app_dir.resolve()
    work_abs: pathlib.Path = work_dir.resolve()
    if work_abs != src_abs and work_abs.is_relative_to(src_abs) is True:
        excludes.add(work_abs.relative_to(src_abs).as_posix())

    t0: float = time.perf_counter()
    logger.info(f"route-isolator: [{route_name}] generating zone {zone_dir}")
    remove_path(zone_dir)
    stats: CopyStats = copy_tree_filtered(src=source_app_dir, dst=zone_dir, exclude_relpaths=excludes)
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(
            f"route-isolator: [{route_name}] cloned {stats.files_copied} files "
            f"({stats.bytes_copied / (1024 * 1024):.1f} MiB), excludes={sorted(excludes)}"
        )

    removed: list[str] = prune_routes(zone_dir=zone_dir, route_name=route_name, conventions=conventions, logger=logger)

    t1: float = time.perf_counter()
    logger.info(f"route-isolator: [{route_name}] zone ready ({len(removed)} pages pruned) in {t1 - t0:.2f}s")
    return zone_dir


def prune_routes(
    *,
    zone_dir: pathlib.Path,
    route_name: str,
    conventions: FrameworkConventions,
    logger: logging.Logger,
) -> list[str]:
    """Delete every page file that does not belong to ``route_name``.

    In the target route's directory only the first page file by
    ``page_file_names`` order survives.

    :returns: Removed page files, relative to the zone.
    :raises NotFoundError: If the zone has no route directory or the route has no page file.
    """

    route_dir: pathlib.Path | None = find_route_dir(zone_dir, conventions)
    if route_dir is None:
        raise NotFoundError(f"No route directory ({', '.join(conventions.route_dirs)}) found in {zone_dir}")

    removed: list[str] = []
    kept: pathlib.Path | None = None
    preference: dict[str, int] = {name: i for i, name in enumerate(conventions.page_file_names)}
    for page in sorted(_iter_page_files(route_dir, conventions), key=lambda p: (str(p.parent), preference[p.name])):
        if _route_of(page, route_dir, conventions) == route_name and kept is None:
            kept = page
            continue
        page.unlink()
        rel: str = page.relative_to(zone_dir).as_posix()
        removed.append(rel)
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"route-isolator: [{route_name}] pruned {rel}")

    if kept is None:
        raise NotFoundError(f"No page file for route {route_name!r} in {route_dir}")
    return removed
