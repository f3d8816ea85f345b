"""Dependency closure merging.

This module turns one compiled entrypoint of a standalone build into an
isolate directory:

- It unions the entrypoint's own trace with the traces of implicit
  dependents the trace format does not connect to it (the root layout, the
  not-found fallback). Those are found by pluggable probes.
- It copies the closure, the page's client chunks and the boot manifests into
  the isolate, preserving root-relative layout.
- It patches the routing manifest so every route executes dynamically, and
  rewrites the build checkout path embedded in the boot files.

Copy failures of traced files are recoverable and reported as warnings; a
missing entrypoint, boot script or required manifest is fatal.
"""

from dataclasses import dataclass
import json
import logging
import os
import pathlib
import time
from typing import Any, Callable

from route_isolator.conventions import FrameworkConventions
from route_isolator.errors import (
    CLIENT_ASSETS,
    IMPLICIT_DEPENDENCY,
    MANIFEST,
    PARTIAL_COPY,
    IsolationError,
    MalformedInputError,
    NotFoundError,
    ResolverError,
    StepWarning,
    record_warning,
)
from route_isolator.fsutil import copy_file, reset_dir, write_text
from route_isolator.paths import apply_asset_prefix, derive_build_source_root, rewrite_absolute_paths
from route_isolator.trace import (
    ClosureSet,
    client_manifest_for,
    entrypoint_for,
    normalize_chunk_path,
    parse_trace,
    relativize,
    trace_path_for,
)


@dataclass(frozen=True, slots=True)
class ClosureContext:
    """What an implicit dependency probe gets to look at.

    :ivar entrypoint: Absolute path of the compiled entrypoint module.
    :ivar project_root: Standalone output root.
    :ivar conventions: Framework conventions.
    """

    entrypoint: pathlib.Path
    project_root: pathlib.Path
    conventions: FrameworkConventions


ImplicitProbe = Callable[[ClosureContext], pathlib.Path | None]


def not_found_probe(ctx: ClosureContext) -> pathlib.Path | None:
    """Trace of the not-found fallback page, rendered for every unmatched request."""

    c: FrameworkConventions = ctx.conventions
    return ctx.project_root / c.server_app_relpath(c.not_found_entry + c.trace_suffix)


def root_layout_probe(ctx: ClosureContext) -> pathlib.Path | None:
    """Trace of the root layout.

    A page's renderer depends on its enclosing layout through a mechanism the
    trace does not record, so the layout must be merged explicitly.
    """

    c: FrameworkConventions = ctx.conventions
    return ctx.project_root / c.server_app_relpath(c.root_layout_entry + c.trace_suffix)


DEFAULT_PROBES: tuple[ImplicitProbe, ...] = (not_found_probe, root_layout_probe)


@dataclass(frozen=True, slots=True)
class ClosureResult:
    """Outcome of :func:`build_closure`.

    :ivar isolate_dir: Populated isolate directory.
    :ivar files: Merged closure (root-relative), including explicitly added entrypoints.
    :ivar copied: Every file written into the isolate (root-relative), sorted.
    :ivar warnings: Recoverable problems.
    """

    isolate_dir: pathlib.Path
    files: ClosureSet
    copied: tuple[str, ...]
    warnings: tuple[StepWarning, ...]


def build_closure(
    *,
    entrypoint: pathlib.Path,
    project_root: pathlib.Path,
    isolate_dir: pathlib.Path,
    conventions: FrameworkConventions | None = None,
    probes: tuple[ImplicitProbe, ...] = DEFAULT_PROBES,
    resolver: Callable[[pathlib.Path], list[str]] | None = None,
    client_manifest: pathlib.Path | None = None,
    build_source_root: pathlib.Path | None = None,
    asset_prefix: str | None = None,
    logger: logging.Logger | None = None,
) -> ClosureResult:
    """Compute an entrypoint's dependency closure and materialize it as an isolate.

    :param entrypoint: Compiled entrypoint module (absolute, or relative to ``project_root``).
    :param project_root: Standalone output root.
    :param isolate_dir: Isolate directory (recreated from scratch).
    :param conventions: Framework conventions (defaults apply if omitted).
    :param probes: Implicit dependency probes.
    :param resolver: Optional client-reference resolver (no client chunks if omitted).
    :param client_manifest: Optional client manifest override (derived from the entrypoint otherwise).
    :param build_source_root: Optional build checkout root (derived from ``project_root`` otherwise).
    :param asset_prefix: Optional external asset host to point the isolate at.
    :param logger: Optional logger.
    :returns: Closure result.
    :raises NotFoundError: If the project root, entrypoint trace or a core file is missing.
    :raises MalformedInputError: If the entrypoint trace or the routing manifest is malformed.
    :raises IsolationError: If ``isolate_dir`` would overwrite the project root.
    """

    if logger is None:
        logger = logging.getLogger("route_isolator")
    if conventions is None:
        conventions = FrameworkConventions()

    if project_root.is_dir() is False:
        raise NotFoundError(f"Standalone output root does not exist: {project_root}")
    _check_isolate_location(isolate_dir=isolate_dir, project_root=project_root)

    root_abs: pathlib.Path = pathlib.Path(os.path.abspath(project_root))
    entry_abs: pathlib.Path = pathlib.Path(os.path.abspath(root_abs / entrypoint))
    entry_rel: str | None = relativize(str(entry_abs), str(root_abs))
    if entry_rel is None:
        raise NotFoundError(f"Entrypoint {entrypoint} is not inside {project_root}")

    t0: float = time.perf_counter()
    warnings: list[StepWarning] = []
    logger.info(f"route-isolator: isolating {entry_rel} -> {isolate_dir}")

    # 1-2. Entrypoint trace plus the entrypoint itself.
    traced: set[str] = set(
        parse_trace(trace_path_for(entry_abs, conventions.trace_suffix), root_abs, logger=logger)
    )
    core: set[str] = {entry_rel, conventions.boot_script_relpath()}

    # 3-4. Implicit dependents.
    ctx: ClosureContext = ClosureContext(entrypoint=entry_abs, project_root=root_abs, conventions=conventions)
    for probe in probes:
        extra_trace: pathlib.Path | None = probe(ctx)
        if extra_trace is None:
            continue
        if extra_trace.is_file() is False:
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"route-isolator: no implicit dependency trace at {extra_trace}")
            continue
        try:
            extra: ClosureSet = parse_trace(extra_trace, root_abs, logger=logger)
            extra_entry: str | None = relativize(
                str(entrypoint_for(extra_trace, conventions.trace_suffix)), str(root_abs)
            )
        except IsolationError as e:
            record_warning(warnings, kind=IMPLICIT_DEPENDENCY, subject=str(extra_trace), message=str(e), logger=logger)
            continue
        traced.update(extra)
        if extra_entry is not None:
            traced.add(extra_entry)
        logger.info(f"route-isolator: merged implicit dependency {extra_trace.name} ({len(extra)} files)")

    closure: ClosureSet = frozenset(traced | core)

    # 5. Copy the closure.
    reset_dir(isolate_dir)
    copied: set[str] = set()
    for rel in sorted(closure):
        try:
            copy_file(src=root_abs / rel, dst=isolate_dir / rel)
        except OSError as e:
            if rel in core:
                raise NotFoundError(f"Required file missing from {project_root}: {rel}") from e
            record_warning(warnings, kind=PARTIAL_COPY, subject=rel, message=str(e), logger=logger)
            continue
        copied.add(rel)
    logger.info(f"route-isolator: copied {len(copied)}/{len(closure)} closure files")

    # 6. Client chunks.
    copied.update(
        _copy_client_chunks(
            entry_abs=entry_abs,
            root_abs=root_abs,
            isolate_dir=isolate_dir,
            conventions=conventions,
            resolver=resolver,
            client_manifest=client_manifest,
            warnings=warnings,
            logger=logger,
        )
    )

    # 7. Manifests.
    copied.update(
        _copy_manifests(root_abs=root_abs, isolate_dir=isolate_dir, conventions=conventions, warnings=warnings, logger=logger)
    )

    # 8. Force dynamic rendering.
    routes_manifest: pathlib.Path = isolate_dir / conventions.routes_manifest_relpath()
    if routes_manifest.is_file() is True:
        force_dynamic_routes(routes_manifest, logger=logger)

    # 9. Build paths.
    if build_source_root is None:
        build_source_root = derive_build_source_root(root_abs, conventions)
    boot_files: list[str] = [
        r
        for r in (conventions.boot_manifest_relpath(), conventions.boot_script_relpath())
        if (isolate_dir / r).is_file() is True
    ]
    warnings.extend(
        rewrite_absolute_paths(
            isolate_dir=isolate_dir,
            build_source_root=build_source_root,
            container_root=conventions.container_root,
            relpaths=boot_files,
            logger=logger,
        )
    )

    if asset_prefix is not None:
        warnings.extend(
            apply_asset_prefix(isolate_dir=isolate_dir, conventions=conventions, asset_prefix=asset_prefix, logger=logger)
        )

    t1: float = time.perf_counter()
    logger.info(
        f"route-isolator: isolate ready ({len(copied)} files, {len(warnings)} warnings) in {t1 - t0:.2f}s"
    )
    return ClosureResult(
        isolate_dir=isolate_dir,
        files=closure,
        copied=tuple(sorted(copied)),
        warnings=tuple(warnings),
    )


def _check_isolate_location(*, isolate_dir: pathlib.Path, project_root: pathlib.Path) -> None:
    """Refuse isolate locations whose reset would delete the build output.

    :param isolate_dir: Isolate directory.
    :param project_root: Standalone output root.
    :raises IsolationError: If ``project_root`` is ``isolate_dir`` or lies inside it.
    """

    iso: pathlib.Path = pathlib.Path(os.path.abspath(isolate_dir))
    root: pathlib.Path = pathlib.Path(os.path.abspath(project_root))
    if root == iso or root.is_relative_to(iso) is True:
        raise IsolationError(f"Isolate directory {isolate_dir} would overwrite the build output {project_root}")


def _copy_client_chunks(
    *,
    entry_abs: pathlib.Path,
    root_abs: pathlib.Path,
    isolate_dir: pathlib.Path,
    conventions: FrameworkConventions,
    resolver: Callable[[pathlib.Path], list[str]] | None,
    client_manifest: pathlib.Path | None,
    warnings: list[StepWarning],
    logger: logging.Logger,
) -> set[str]:
    """Copy a page's client chunks from the build's static dir into the isolate.

    Chunks live next to the standalone root (``<dist_dir>/static/...``) and are
    copied to ``<app_subdir>/<dist_dir>/static/...`` inside the isolate.

    :returns: Isolate-relative paths copied.
    """

    manifest: pathlib.Path = client_manifest or client_manifest_for(entry_abs, conventions.client_manifest_suffix)
    if resolver is None:
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug("route-isolator: no client-reference resolver configured; skipping client chunks")
        return set()
    if manifest.is_file() is False:
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"route-isolator: no client-reference manifest at {manifest}")
        return set()

    try:
        chunks: list[str] = resolver(manifest)
    except ResolverError as e:
        record_warning(warnings, kind=CLIENT_ASSETS, subject=manifest.name, message=str(e), logger=logger)
        return set()

    static_root: pathlib.Path = root_abs.parent
    copied: set[str] = set()
    for chunk in sorted(set(chunks)):
        normalized: str | None = normalize_chunk_path(chunk, conventions.static_prefixes)
        if normalized is None:
            record_warning(warnings, kind=CLIENT_ASSETS, subject=chunk, message="unusable chunk path", logger=logger)
            continue
        dest_rel: str = conventions.dist_relpath(normalized)
        try:
            copy_file(src=static_root / normalized, dst=isolate_dir / dest_rel)
        except OSError as e:
            record_warning(warnings, kind=CLIENT_ASSETS, subject=normalized, message=str(e), logger=logger)
            continue
        copied.add(dest_rel)

    logger.info(f"route-isolator: copied {len(copied)}/{len(set(chunks))} client chunks")
    return copied


def _copy_manifests(
    *,
    root_abs: pathlib.Path,
    isolate_dir: pathlib.Path,
    conventions: FrameworkConventions,
    warnings: list[StepWarning],
    logger: logging.Logger,
) -> set[str]:
    """Copy the boot manifests the trace does not reference.

    :returns: Isolate-relative paths copied.
    :raises NotFoundError: If a required manifest is missing.
    """

    names: list[str] = list(conventions.manifests)
    for extra in (conventions.boot_manifest, conventions.routes_manifest):
        if extra not in names:
            names.append(extra)

    copied: set[str] = set()
    for name in names:
        rel: str = conventions.dist_relpath(name)
        try:
            copy_file(src=root_abs / rel, dst=isolate_dir / rel)
        except OSError as e:
            if name in conventions.required_manifests:
                raise NotFoundError(f"Required manifest missing from {root_abs}: {rel}") from e
            record_warning(warnings, kind=MANIFEST, subject=rel, message=str(e), logger=logger)
            continue
        copied.add(rel)
    return copied


def force_dynamic_routes(routes_manifest: pathlib.Path, *, logger: logging.Logger | None = None) -> bool:
    """Clear the static route classification of a routing manifest.

    The isolate omits pre-rendered artifacts, so a route the router still
    believes to be static would 404 at runtime.

    :param routes_manifest: Routing manifest path (rewritten in place).
    :param logger: Optional logger.
    :returns: ``True`` if the manifest was changed.
    :raises MalformedInputError: If the manifest is not a JSON object.
    """

    if logger is None:
        logger = logging.getLogger("route_isolator")

    try:
        manifest: Any = json.loads(routes_manifest.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise MalformedInputError(f"Routing manifest is not valid JSON: {routes_manifest}: {e}") from e
    if isinstance(manifest, dict) is False:
        raise MalformedInputError(f"Routing manifest root must be an object: {routes_manifest}")

    if "staticRoutes" not in manifest:
        return False

    cleared: int = len(manifest["staticRoutes"]) if isinstance(manifest["staticRoutes"], list) else 0
    manifest["staticRoutes"] = []
    write_text(routes_manifest, json.dumps(manifest, indent=2) + "\n")
    logger.info(f"route-isolator: forced dynamic routing ({cleared} static routes cleared)")
    return True
