"""Runtime package repair.

A traced dependency tree boots under the framework's own server, but not
necessarily inside a compiled single-executable runtime. This module applies
best-effort corrections to an isolate's ``node_modules``:

- Restore fragile packages wholesale from a trusted, un-trimmed checkout.
- Restore package descriptors whose files were traced but which were not.
- Re-expose an internal module the framework hides under a public name.
- Synthesize alias directories and ``index.js`` proxies for entry points
  that only exist through ``main``.
- Replace the framework's descriptor with one that has no ``exports`` map.
- Prune type declarations, source maps, tests, docs and foreign binaries.

Every step is independent: a failure becomes a warning and the next step
still runs.
"""

from dataclasses import dataclass
import json
import logging
import os
import pathlib
import posixpath
import time
from typing import Any, Callable, Iterator

from route_isolator.conventions import FrameworkConventions
from route_isolator.errors import REPAIR_STEP, IsolationError, StepWarning, record_warning
from route_isolator.fsutil import copy_file, dir_size, remove_path, replace_tree, write_text
from route_isolator.paths import derive_build_source_root


@dataclass(frozen=True, slots=True)
class RepairReport:
    """Outcome of :func:`repair`.

    :ivar warnings: Recoverable problems.
    :ivar restored: Packages restored from the trusted root.
    :ivar descriptors: Package descriptors restored (relative to ``node_modules``).
    :ivar shimmed: Files written into the shim package.
    :ivar proxies: Proxy files synthesized (relative to ``node_modules``).
    :ivar pruned: Paths removed (relative to ``node_modules``).
    """

    warnings: tuple[StepWarning, ...]
    restored: tuple[str, ...]
    descriptors: tuple[str, ...]
    shimmed: tuple[str, ...]
    proxies: tuple[str, ...]
    pruned: tuple[str, ...]


def repair(
    *,
    isolate_dir: pathlib.Path,
    project_root: pathlib.Path,
    conventions: FrameworkConventions | None = None,
    trusted_root: pathlib.Path | None = None,
    logger: logging.Logger | None = None,
) -> RepairReport:
    """Repair an isolate's dependency tree in place.

    :param isolate_dir: Isolate directory.
    :param project_root: Standalone output root the isolate was built from.
    :param conventions: Framework conventions (defaults apply if omitted).
    :param trusted_root: Directory whose ``node_modules`` holds full package copies.
        Defaults to the build checkout root derived from ``project_root``.
    :param logger: Optional logger.
    :returns: Repair report. Step failures are reported as warnings, never raised.
    """

    if logger is None:
        logger = logging.getLogger("route_isolator")
    if conventions is None:
        conventions = FrameworkConventions()
    if trusted_root is None:
        trusted_root = derive_build_source_root(project_root, conventions)

    modules_dir: pathlib.Path = isolate_dir / conventions.node_modules
    trusted_modules: pathlib.Path | None = None
    if trusted_root is not None:
        trusted_modules = trusted_root / conventions.node_modules

    t0: float = time.perf_counter()
    logger.info(f"route-isolator: repairing {modules_dir}")
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"route-isolator: trusted_modules={trusted_modules}")

    warnings: list[StepWarning] = []
    restored: list[str] = []
    descriptors: list[str] = []
    shimmed: list[str] = []
    proxies: list[str] = []
    pruned: list[str] = []

    steps: list[tuple[str, Callable[[], list[str]], list[str]]] = [
        (
            "restore",
            lambda: restore_packages(
                modules_dir=modules_dir,
                trusted_modules=trusted_modules,
                packages=conventions.restore_packages,
                warnings=warnings,
                logger=logger,
            ),
            restored,
        ),
        (
            "descriptors",
            lambda: restore_descriptors(
                modules_dir=modules_dir,
                source_modules=project_root / conventions.node_modules,
                logger=logger,
            ),
            descriptors,
        ),
        (
            "shim",
            lambda: shim_internal_module(
                modules_dir=modules_dir,
                trusted_modules=trusted_modules,
                conventions=conventions,
                warnings=warnings,
                logger=logger,
            ),
            shimmed,
        ),
        (
            "aliases",
            lambda: synthesize_alias_dirs(modules_dir=modules_dir, conventions=conventions, logger=logger),
            proxies,
        ),
        (
            "proxies",
            lambda: synthesize_entry_proxies(
                modules_dir=modules_dir, conventions=conventions, warnings=warnings, logger=logger
            ),
            proxies,
        ),
        (
            "framework-descriptor",
            lambda: override_framework_descriptor(modules_dir=modules_dir, conventions=conventions, logger=logger),
            [],
        ),
        (
            "prune",
            lambda: prune_node_modules(modules_dir, conventions=conventions, warnings=warnings, logger=logger),
            pruned,
        ),
    ]

    for name, step, sink in steps:
        try:
            sink.extend(step())
        except (OSError, ValueError, IsolationError) as e:
            record_warning(warnings, kind=REPAIR_STEP, subject=name, message=str(e), logger=logger)

    t1: float = time.perf_counter()
    logger.info(
        f"route-isolator: repair done (restored={len(restored)} descriptors={len(descriptors)} "
        f"proxies={len(proxies)} pruned={len(pruned)} warnings={len(warnings)}) in {t1 - t0:.2f}s"
    )
    return RepairReport(
        warnings=tuple(warnings),
        restored=tuple(restored),
        descriptors=tuple(descriptors),
        shimmed=tuple(shimmed),
        proxies=tuple(proxies),
        pruned=tuple(pruned),
    )


def restore_packages(
    *,
    modules_dir: pathlib.Path,
    trusted_modules: pathlib.Path | None,
    packages: tuple[str, ...],
    warnings: list[StepWarning],
    logger: logging.Logger,
) -> list[str]:
    """Replace fragile packages with full copies from the trusted root.

    Packages absent from the trusted root are skipped silently.

    :returns: Names of restored packages.
    """

    if trusted_modules is None:
        record_warning(
            warnings,
            kind=REPAIR_STEP,
            subject="restore",
            message="no trusted dependency root; fragile packages were not restored",
            logger=logger,
        )
        return []
    if os.path.abspath(trusted_modules) == os.path.abspath(modules_dir):
        record_warning(
            warnings,
            kind=REPAIR_STEP,
            subject="restore",
            message=f"trusted root {trusted_modules} is the isolate itself",
            logger=logger,
        )
        return []

    restored: list[str] = []
    for name in packages:
        src: pathlib.Path = trusted_modules / name
        if src.is_dir() is False:
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"route-isolator: {name} not in trusted root; skipping restore")
            continue
        try:
            replace_tree(src=src, dst=modules_dir / name)
        except OSError as e:
            record_warning(warnings, kind=REPAIR_STEP, subject=f"restore {name}", message=str(e), logger=logger)
            continue
        logger.info(f"route-isolator: restored {name} from {src}")
        restored.append(name)
    return restored


def restore_descriptors(
    *,
    modules_dir: pathlib.Path,
    source_modules: pathlib.Path,
    logger: logging.Logger,
) -> list[str]:
    """Copy missing ``package.json`` files into directories the isolate already has.

    :returns: Restored descriptors, relative to ``node_modules``.
    """

    if source_modules.is_dir() is False or modules_dir.is_dir() is False:
        return []

    restored: list[str] = []
    for src in sorted(source_modules.rglob("package.json")):
        rel: pathlib.Path = src.relative_to(source_modules)
        dest: pathlib.Path = modules_dir / rel
        if dest.exists() is True or dest.parent.is_dir() is False:
            continue
        copy_file(src=src, dst=dest)
        restored.append(rel.as_posix())

    if len(restored) > 0:
        logger.info(f"route-isolator: restored {len(restored)} package descriptors")
    return restored


def shim_internal_module(
    *,
    modules_dir: pathlib.Path,
    trusted_modules: pathlib.Path | None,
    conventions: FrameworkConventions,
    warnings: list[StepWarning],
    logger: logging.Logger,
) -> list[str]:
    """Expose the framework's bundled internal module under its public package name.

    :returns: Files written into the shim package (relative to ``node_modules``).
    """

    bases: list[pathlib.Path] = [modules_dir]
    if trusted_modules is not None:
        bases.append(trusted_modules)

    source_dir: pathlib.Path | None = None
    for base in bases:
        for candidate in conventions.shim_source_candidates:
            if (base / candidate).is_dir() is True:
                source_dir = base / candidate
                break
        if source_dir is not None:
            break

    if source_dir is None:
        record_warning(
            warnings,
            kind=REPAIR_STEP,
            subject="shim",
            message=f"could not locate {conventions.shim_package} sources; it will fail if used at request time",
            logger=logger,
        )
        return []

    names: list[str] = sorted(p.name for p in source_dir.iterdir() if p.is_file() is True)
    shim_dir: pathlib.Path = modules_dir / conventions.shim_package
    exports: dict[str, str] = {}
    written: list[str] = []
    for key, dest_name in conventions.shim_mappings:
        match: str | None = None
        for name in names:
            if key in name and conventions.shim_required_marker in name:
                match = name
                break
        if match is None:
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"route-isolator: no {key!r} build in {source_dir}")
            continue
        copy_file(src=source_dir / match, dst=shim_dir / dest_name)
        exports[f"./{key}"] = f"./{dest_name}"
        written.append(f"{conventions.shim_package}/{dest_name}")
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"route-isolator: shim {match} -> {dest_name}")

    if len(exports) == 0:
        record_warning(
            warnings,
            kind=REPAIR_STEP,
            subject="shim",
            message=f"no matching module files in {source_dir}",
            logger=logger,
        )
        return []

    descriptor: dict[str, Any] = {"name": conventions.shim_package, "exports": exports}
    write_text(shim_dir / "package.json", json.dumps(descriptor, indent=2) + "\n")
    written.append(f"{conventions.shim_package}/package.json")
    logger.info(f"route-isolator: shimmed {conventions.shim_package} from {source_dir} ({len(exports)} entries)")
    return written


def synthesize_alias_dirs(
    *,
    modules_dir: pathlib.Path,
    conventions: FrameworkConventions,
    logger: logging.Logger,
) -> list[str]:
    """Create physical alias directories of one-line proxies.

    :returns: Proxy files written (relative to ``node_modules``).
    """

    written: list[str] = []
    for alias in conventions.alias_dirs:
        pkg_dir: pathlib.Path = modules_dir / alias.package
        src_dir: pathlib.Path = pkg_dir / alias.source_dir
        if src_dir.is_dir() is False:
            continue
        alias_dir: pathlib.Path = pkg_dir / alias.alias_dir
        for src in sorted(src_dir.iterdir()):
            if src.is_file() is False or src.name.endswith(alias.suffix) is False:
                continue
            base: str = src.name[0 : -len(alias.suffix)]
            proxy: pathlib.Path = alias_dir / f"{base}.js"
            if proxy.exists() is True:
                continue
            write_text(proxy, f"module.exports = require('../{alias.source_dir}/{src.name}');\n")
            written.append(proxy.relative_to(modules_dir).as_posix())
        logger.info(f"route-isolator: alias dir {alias.package}/{alias.alias_dir} ready")
    return written


def iter_package_dirs(modules_dir: pathlib.Path, conventions: FrameworkConventions) -> Iterator[pathlib.Path]:
    """Yield candidate package directories.

    Covers top-level packages, one level of ``@scope`` nesting, and packages
    nested under ``compiled_package_roots``.

    :param modules_dir: ``node_modules`` directory.
    :param conventions: Framework conventions.
    :returns: Iterator of directories (not all are packages).
    """

    if modules_dir.is_dir() is False:
        return

    for entry in sorted(modules_dir.iterdir()):
        if entry.is_dir() is False or entry.name.startswith(".") is True:
            continue
        if entry.name.startswith("@") is True:
            for scoped in sorted(entry.iterdir()):
                if scoped.is_dir() is True:
                    yield scoped
            continue
        yield entry

    for root in conventions.compiled_package_roots:
        compiled: pathlib.Path = modules_dir / root
        if compiled.is_dir() is False:
            continue
        for nested in sorted(compiled.iterdir()):
            if nested.is_dir() is True:
                yield nested


def synthesize_entry_proxies(
    *,
    modules_dir: pathlib.Path,
    conventions: FrameworkConventions,
    warnings: list[StepWarning],
    logger: logging.Logger,
) -> list[str]:
    """Create ``index.js`` proxies for packages that only declare ``main``.

    Existing entry files are never overwritten.

    :returns: Proxy files written (relative to ``node_modules``).
    """

    written: list[str] = []
    for pkg_dir in iter_package_dirs(modules_dir, conventions):
        rel: str = pkg_dir.relative_to(modules_dir).as_posix()
        try:
            target: str | None = _proxy_target(pkg_dir, conventions)
        except (OSError, UnicodeDecodeError) as e:
            record_warning(warnings, kind=REPAIR_STEP, subject=f"proxy {rel}", message=str(e), logger=logger)
            continue
        if target is None:
            continue

        entry: pathlib.Path = pkg_dir / conventions.proxy_entry_name
        try:
            write_text(entry, f"module.exports = require('{target}');\n")
        except OSError as e:
            record_warning(warnings, kind=REPAIR_STEP, subject=f"proxy {rel}", message=str(e), logger=logger)
            continue
        written.append(entry.relative_to(modules_dir).as_posix())
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"route-isolator: proxy {rel}/{conventions.proxy_entry_name} -> {target}")

    if len(written) > 0:
        logger.info(f"route-isolator: synthesized {len(written)} entry proxies")
    return written


def _proxy_target(pkg_dir: pathlib.Path, conventions: FrameworkConventions) -> str | None:
    """Return the ``require`` target of a package's proxy, or ``None`` if no proxy is needed.

    :param pkg_dir: Package directory.
    :param conventions: Framework conventions.
    :returns: Relative module specifier (``./lib/index.js``) or ``None``.
    """

    descriptor: pathlib.Path = pkg_dir / "package.json"
    if descriptor.is_file() is False:
        return None
    entry: pathlib.Path = pkg_dir / conventions.proxy_entry_name
    if entry.exists() is True or entry.is_symlink() is True:
        return None

    try:
        data: Any = json.loads(descriptor.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict) is False:
        return None

    main: Any = data.get("main")
    if isinstance(main, str) is False or len(main.strip()) == 0:
        return None

    target: str = main.strip()
    if target.startswith(".") is False and target.startswith("/") is False:
        target = "./" + target

    # A main that resolves to the missing entry itself would make the proxy require itself.
    if _resolves_to_entry(target, conventions.proxy_entry_name) is True:
        return None
    return target


def _resolves_to_entry(target: str, entry_name: str) -> bool:
    """Whether ``require(target)`` from the package dir would load ``entry_name``.

    Applies the resolution Node performs for a package-relative main: a bare
    directory loads its index, and the ``.js`` extension is optional.
    """

    resolved: str = posixpath.normpath(target.replace("\\", "/")).rstrip("/")
    if resolved in ("", "."):
        return True
    stem: str = entry_name[0 : -len(".js")] if entry_name.endswith(".js") else entry_name
    return resolved in (entry_name, stem)


def override_framework_descriptor(
    *,
    modules_dir: pathlib.Path,
    conventions: FrameworkConventions,
    logger: logging.Logger,
) -> list[str]:
    """Replace the framework's descriptor with one that has no ``exports`` map.

    The boot script deep-imports framework internals that the original
    ``exports`` allow-list blocks. The original version string is kept when
    readable; an empty ``index.js`` is created only when absent.

    :returns: Files written (relative to ``node_modules``).
    """

    pkg_dir: pathlib.Path = modules_dir / conventions.framework_package
    descriptor: pathlib.Path = pkg_dir / "package.json"

    version: str = "0.0.0"
    if descriptor.is_file() is True:
        try:
            original: Any = json.loads(descriptor.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            original = None
        if isinstance(original, dict) is True and isinstance(original.get("version"), str) is True:
            version = original["version"]

    permissive: dict[str, str] = {
        "name": conventions.framework_package,
        "version": version,
        "main": conventions.proxy_entry_name,
    }
    write_text(descriptor, json.dumps(permissive, indent=2) + "\n")
    written: list[str] = [descriptor.relative_to(modules_dir).as_posix()]

    entry: pathlib.Path = pkg_dir / conventions.proxy_entry_name
    if entry.exists() is False:
        write_text(entry, "module.exports = {};\n")
        written.append(entry.relative_to(modules_dir).as_posix())

    logger.info(f"route-isolator: wrote permissive {conventions.framework_package}/package.json (version={version})")
    return written


def _prune_reason(rel_lower: str, name_lower: str, is_dir: bool, conventions: FrameworkConventions) -> str | None:
    """Return why a path should be pruned, or ``None`` to keep it."""

    for marker in conventions.foreign_platform_markers:
        if marker in rel_lower:
            return f"foreign platform ({marker})"
    if is_dir is True:
        if name_lower in {n.lower() for n in conventions.prune_dir_names}:
            return "directory"
        return None
    for suffix in conventions.prune_file_suffixes:
        if name_lower.endswith(suffix) is True:
            return f"suffix {suffix}"
    return None


def prune_node_modules(
    modules_dir: pathlib.Path,
    *,
    conventions: FrameworkConventions | None = None,
    warnings: list[StepWarning] | None = None,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Delete files the runtime never needs from a dependency directory.

    Matching directories are removed whole without descending into them.
    Foreign-platform markers are matched against the path relative to
    ``modules_dir``.

    :param modules_dir: ``node_modules`` directory.
    :param conventions: Framework conventions (defaults apply if omitted).
    :param warnings: Optional list collecting removal failures.
    :param logger: Optional logger.
    :returns: Removed paths relative to ``modules_dir`` (sorted).
    """

    if logger is None:
        logger = logging.getLogger("route_isolator")
    if conventions is None:
        conventions = FrameworkConventions()
    if warnings is None:
        warnings = []
    if modules_dir.is_dir() is False:
        return []

    removed: list[str] = []
    bytes_freed: int = 0

    for root_str, dirs, files in os.walk(modules_dir, topdown=True):
        root_path: pathlib.Path = pathlib.Path(root_str)
        rel_root: pathlib.PurePosixPath = pathlib.PurePosixPath(root_path.relative_to(modules_dir).as_posix())

        keep_dirs: list[str] = []
        for d in sorted(dirs):
            rel: str = (rel_root / d).as_posix()
            reason: str | None = _prune_reason(rel.lower(), d.lower(), True, conventions)
            if reason is None:
                keep_dirs.append(d)
                continue
            path: pathlib.Path = root_path / d
            try:
                size: int = dir_size(path)
                remove_path(path)
            except OSError as e:
                record_warning(warnings, kind=REPAIR_STEP, subject=f"prune {rel}", message=str(e), logger=logger)
                continue
            bytes_freed += size
            removed.append(rel)
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"route-isolator: pruned {rel}/ ({reason})")
        dirs[:] = keep_dirs

        for name in sorted(files):
            rel_file: str = (rel_root / name).as_posix()
            reason_file: str | None = _prune_reason(rel_file.lower(), name.lower(), False, conventions)
            if reason_file is None:
                continue
            file_path: pathlib.Path = root_path / name
            try:
                file_size: int = file_path.lstat().st_size
                file_path.unlink()
            except OSError as e:
                record_warning(warnings, kind=REPAIR_STEP, subject=f"prune {rel_file}", message=str(e), logger=logger)
                continue
            bytes_freed += file_size
            removed.append(rel_file)
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"route-isolator: pruned {rel_file} ({reason_file})")

    logger.info(f"route-isolator: pruned {len(removed)} paths ({bytes_freed / (1024 * 1024):.1f} MiB)")
    return sorted(removed)
