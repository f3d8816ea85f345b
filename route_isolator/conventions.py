"""Framework conventions.

Every file name, candidate search path and name table the pipeline relies on
lives in :class:`FrameworkConventions`, so the conventions can be varied per
framework version (or per test) without touching the pipeline itself.

Paths stored here are POSIX-style and relative:

- ``app_subdir`` is the app's location inside the standalone output root
  (``apps/web`` in a monorepo, empty for a single-app repo).
- Build-output entries (manifests, server dirs) are relative to
  ``<app_subdir>/<dist_dir>``.
- Package entries are relative to a ``node_modules`` directory.
"""

from dataclasses import dataclass, field, fields, replace
import json
import pathlib
import posixpath
from typing import Any

from route_isolator.errors import ConventionsError


@dataclass(frozen=True, slots=True)
class AliasDir:
    """A physical alias directory of proxies inside a package.

    :ivar package: Package name (e.g. ``@swc/helpers``).
    :ivar source_dir: Directory inside the package holding the real modules.
    :ivar alias_dir: Directory inside the package to create proxies in.
    :ivar suffix: File suffix of the real modules (e.g. ``.cjs``).
    """

    package: str
    source_dir: str
    alias_dir: str
    suffix: str


@dataclass(frozen=True, slots=True)
class FrameworkConventions:
    """Conventions of the framework's standalone build output.

    :ivar app_subdir: App directory relative to the standalone root.
    :ivar dist_dir: Build output directory name of the app.
    :ivar standalone_dir: Standalone output directory inside ``dist_dir``.
    :ivar trace_suffix: Suffix appended to a module path to find its trace.
    :ivar container_root: Absolute execution root inside the container.
    :ivar boot_script: Boot script path relative to ``app_subdir``.
    :ivar boot_manifest: Boot manifest relative to the dist dir.
    :ivar routes_manifest: Routing manifest relative to the dist dir.
    :ivar manifests: Manifests copied best-effort (relative to the dist dir).
    :ivar required_manifests: Subset of ``manifests`` whose absence is fatal.
    :ivar server_app_dir: Compiled route tree relative to the dist dir.
    :ivar page_entry_name: Compiled page module name inside a route dir.
    :ivar not_found_entry: Not-found fallback module relative to ``server_app_dir``.
    :ivar root_layout_entry: Root layout module relative to ``server_app_dir``.
    :ivar client_manifest_suffix: Appended to a page module stem to find its client manifest.
    :ivar static_prefixes: Prefixes stripped (in order) from client chunk paths.
    :ivar node_modules: Dependency directory name.
    :ivar framework_package: The framework's own package name.
    :ivar restore_packages: Packages restored wholesale from the trusted root.
    :ivar shim_package: Public package name the internal module is exposed as.
    :ivar shim_source_candidates: Candidate dirs (relative to ``node_modules``) of the internal module.
    :ivar shim_mappings: Ordered ``(pattern key, destination file name)`` pairs.
    :ivar shim_required_marker: Substring a source file name must contain to be shimmed.
    :ivar alias_dirs: Alias proxy directories to synthesize.
    :ivar compiled_package_roots: Extra dirs (relative to ``node_modules``) holding nested packages.
    :ivar proxy_entry_name: Conventional default entry file of a package.
    :ivar prune_dir_names: Directory names removed whole while pruning.
    :ivar prune_file_suffixes: File suffixes removed while pruning.
    :ivar foreign_platform_markers: Substrings identifying non-target platform files.
    :ivar page_file_names: Page-defining source file names, in keep-preference order.
    :ivar route_dirs: Candidate route-definition directories of the source app.
    :ivar root_route_name: Sentinel route name of the root page.
    :ivar zone_excludes: Relative paths never copied into a zone.
    :ivar isolate_dir_name: Isolate directory name inside a zone.
    :ivar standalone_config_marker: Boot script line the asset-prefix override is inserted before.
    """

    app_subdir: str = ""
    dist_dir: str = ".next"
    standalone_dir: str = "standalone"
    trace_suffix: str = ".nft.json"
    container_root: str = "/app"
    boot_script: str = "server.js"
    boot_manifest: str = "required-server-files.json"
    routes_manifest: str = "routes-manifest.json"
    manifests: tuple[str, ...] = (
        "BUILD_ID",
        "images-manifest.json",
        "build-manifest.json",
        "react-loadable-manifest.json",
        "server/pages-manifest.json",
        "server/app-paths-manifest.json",
        "server/middleware-manifest.json",
        "server/server-reference-manifest.json",
        "server/functions-config-manifest.json",
        "server/next-font-manifest.json",
    )
    required_manifests: tuple[str, ...] = ("BUILD_ID",)
    server_app_dir: str = "server/app"
    page_entry_name: str = "page.js"
    not_found_entry: str = "_not-found/page.js"
    root_layout_entry: str = "layout.js"
    client_manifest_suffix: str = "_client-reference-manifest.js"
    static_prefixes: tuple[str, ...] = ("/", "_next/")
    node_modules: str = "node_modules"
    framework_package: str = "next"
    restore_packages: tuple[str, ...] = (
        "next",
        "react",
        "react-dom",
        "styled-jsx",
        "@swc/helpers",
        "@next/env",
        "pg",
    )
    shim_package: str = "react-server-dom-webpack"
    shim_source_candidates: tuple[str, ...] = (
        "next/dist/compiled/react-server-dom-webpack-experimental/cjs",
        "next/dist/compiled/react-server-dom-webpack/cjs",
    )
    shim_mappings: tuple[tuple[str, str], ...] = (
        ("server.node", "server.node.js"),
        ("client", "client.js"),
        ("server.edge", "server.edge.js"),
    )
    shim_required_marker: str = "production"
    alias_dirs: tuple[AliasDir, ...] = field(
        default_factory=lambda: (AliasDir(package="@swc/helpers", source_dir="cjs", alias_dir="_", suffix=".cjs"),)
    )
    compiled_package_roots: tuple[str, ...] = ("next/dist/compiled",)
    proxy_entry_name: str = "index.js"
    prune_dir_names: tuple[str, ...] = ("@types",)
    prune_file_suffixes: tuple[str, ...] = (".d.ts", ".map", ".test.js", ".spec.js", ".md", ".markdown")
    foreign_platform_markers: tuple[str, ...] = ("darwin", "macos", "win32", "windows")
    page_file_names: tuple[str, ...] = ("page.tsx", "page.ts", "page.jsx", "page.js")
    route_dirs: tuple[str, ...] = ("src/app", "app")
    root_route_name: str = "home"
    zone_excludes: tuple[str, ...] = (".next", "dist", "dist-isolated", "node_modules", ".git")
    isolate_dir_name: str = "dist-deploy"
    standalone_config_marker: str = "process.env.__NEXT_PRIVATE_STANDALONE_CONFIG ="

    def app_relpath(self, *parts: str) -> str:
        """Join ``parts`` under ``app_subdir``.

        :param parts: Path components (POSIX).
        :returns: Standalone-root-relative POSIX path.
        """

        return _join(self.app_subdir, *parts)

    def dist_relpath(self, *parts: str) -> str:
        """Join ``parts`` under ``<app_subdir>/<dist_dir>``.

        :param parts: Path components (POSIX).
        :returns: Standalone-root-relative POSIX path.
        """

        return _join(self.app_subdir, self.dist_dir, *parts)

    def boot_script_relpath(self) -> str:
        return self.app_relpath(self.boot_script)

    def boot_manifest_relpath(self) -> str:
        return self.dist_relpath(self.boot_manifest)

    def routes_manifest_relpath(self) -> str:
        return self.dist_relpath(self.routes_manifest)

    def server_app_relpath(self, *parts: str) -> str:
        return self.dist_relpath(self.server_app_dir, *parts)

    def standalone_suffix(self) -> str:
        """Return the path suffix that separates the build source root from the standalone root."""

        return _join(self.app_subdir, self.dist_dir, self.standalone_dir)

    def page_entry_relpath(self, route_name: str) -> str:
        """Return the compiled page module of a route.

        :param route_name: Route name (``root_route_name`` for the root page).
        :returns: Standalone-root-relative POSIX path of the page module.
        """

        if route_name == self.root_route_name:
            return self.server_app_relpath(self.page_entry_name)
        return self.server_app_relpath(route_name, self.page_entry_name)


def _join(*parts: str) -> str:
    """Join non-empty POSIX parts.

    :param parts: Path components, empty ones are skipped.
    :returns: Joined path.
    """

    kept: list[str] = [p.strip("/") for p in parts if len(p.strip("/")) > 0]
    if len(kept) == 0:
        return ""
    return posixpath.join(*kept)


def resolve_conventions(
    *,
    app_subdir: str | None = None,
    container_root: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> FrameworkConventions:
    """Resolve user-supplied settings into a :class:`FrameworkConventions`.

    :param app_subdir: Optional app directory relative to the standalone root.
    :param container_root: Optional absolute container execution root.
    :param overrides: Optional mapping of field name to value (e.g. from JSON).
    :returns: Resolved conventions.
    :raises ConventionsError: If a field is unknown or has an invalid value.
    """

    values: dict[str, Any] = {}
    if overrides is not None:
        values.update(_coerce_overrides(overrides))
    if app_subdir is not None:
        values["app_subdir"] = app_subdir
    if container_root is not None:
        values["container_root"] = container_root

    conventions: FrameworkConventions = replace(FrameworkConventions(), **values)
    return replace(
        conventions,
        app_subdir=_normalize_app_subdir(conventions.app_subdir),
        container_root=_normalize_container_root(conventions.container_root),
    )


def load_conventions(
    path: pathlib.Path,
    *,
    app_subdir: str | None = None,
    container_root: str | None = None,
) -> FrameworkConventions:
    """Load convention overrides from a JSON object file.

    :param path: JSON file containing an object of field overrides.
    :param app_subdir: Optional app directory override (wins over the file).
    :param container_root: Optional container root override (wins over the file).
    :returns: Resolved conventions.
    :raises ConventionsError: If the file cannot be read or holds invalid values.
    """

    try:
        raw: Any = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConventionsError(f"Cannot read conventions file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConventionsError(f"Conventions file {path} is not valid JSON: {e}") from e

    if isinstance(raw, dict) is False:
        raise ConventionsError(f"Conventions file {path} must contain a JSON object.")

    return resolve_conventions(app_subdir=app_subdir, container_root=container_root, overrides=raw)


def _coerce_overrides(overrides: dict[str, Any]) -> dict[str, Any]:
    """Validate override keys and coerce JSON lists into the tuple shapes used here.

    :param overrides: Raw override mapping.
    :returns: Mapping suitable for :func:`dataclasses.replace`.
    :raises ConventionsError: On unknown keys or wrongly typed values.
    """

    defaults: FrameworkConventions = FrameworkConventions()
    known: set[str] = {f.name for f in fields(FrameworkConventions)}
    out: dict[str, Any] = {}

    for key in sorted(overrides):
        value: Any = overrides[key]
        if key not in known:
            raise ConventionsError(f"Unknown conventions field: {key!r}")

        default: Any = getattr(defaults, key)
        if key == "alias_dirs":
            out[key] = _coerce_alias_dirs(value)
        elif key == "shim_mappings":
            out[key] = _coerce_pairs(key, value)
        elif isinstance(default, tuple) is True:
            out[key] = _coerce_str_tuple(key, value)
        elif isinstance(value, str) is False:
            raise ConventionsError(f"Conventions field {key!r} must be a string, got {type(value).__name__}.")
        else:
            out[key] = value

    return out


def _coerce_str_tuple(key: str, value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)) is False or not all(isinstance(v, str) for v in value):
        raise ConventionsError(f"Conventions field {key!r} must be a list of strings.")
    return tuple(value)


def _coerce_pairs(key: str, value: Any) -> tuple[tuple[str, str], ...]:
    if isinstance(value, dict) is True:
        items: list[Any] = list(value.items())
    elif isinstance(value, (list, tuple)) is True:
        items = list(value)
    else:
        raise ConventionsError(f"Conventions field {key!r} must be an object or a list of pairs.")

    pairs: list[tuple[str, str]] = []
    for item in items:
        if (
            isinstance(item, (list, tuple)) is False
            or len(item) != 2
            or not all(isinstance(v, str) for v in item)
        ):
            raise ConventionsError(f"Conventions field {key!r} has an invalid entry: {item!r}")
        pairs.append((item[0], item[1]))
    return tuple(pairs)


def _coerce_alias_dirs(value: Any) -> tuple[AliasDir, ...]:
    if isinstance(value, (list, tuple)) is False:
        raise ConventionsError("Conventions field 'alias_dirs' must be a list of objects.")

    out: list[AliasDir] = []
    for item in value:
        if isinstance(item, AliasDir) is True:
            out.append(item)
            continue
        if isinstance(item, dict) is False:
            raise ConventionsError(f"Invalid alias_dirs entry: {item!r}")
        try:
            out.append(
                AliasDir(
                    package=str(item["package"]),
                    source_dir=str(item["source_dir"]),
                    alias_dir=str(item["alias_dir"]),
                    suffix=str(item["suffix"]),
                )
            )
        except KeyError as e:
            raise ConventionsError(f"alias_dirs entry is missing {e.args[0]!r}: {item!r}") from e
    return tuple(out)


def _normalize_app_subdir(app_subdir: str) -> str:
    """Normalize ``app_subdir`` into a clean relative POSIX path.

    :param app_subdir: Raw value (``""`` and ``"."`` mean the standalone root).
    :returns: Normalized value.
    :raises ConventionsError: If the value is absolute or escapes the root.
    """

    raw: str = app_subdir.replace("\\", "/").strip()
    if raw.startswith("/") is True:
        raise ConventionsError(f"app_subdir must be relative, got {app_subdir!r}")
    if raw in {"", "."}:
        return ""

    normalized: str = posixpath.normpath(raw)
    if normalized == ".." or normalized.startswith("../") is True:
        raise ConventionsError(f"app_subdir must not escape the standalone root: {app_subdir!r}")
    return normalized


def _normalize_container_root(container_root: str) -> str:
    if container_root.startswith("/") is False:
        raise ConventionsError(f"container_root must be an absolute POSIX path, got {container_root!r}")
    if container_root == "/":
        return container_root
    return container_root.rstrip("/")
