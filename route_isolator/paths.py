"""Build-machine path rewriting.

The framework embeds the absolute path of the build checkout in the boot
manifest and in the boot script. Inside the container the isolate lives at a
different root, so that constant is substituted as plain text. The files are
never parsed as code.
"""

import json
import logging
import os
import pathlib
import re
from typing import Any

from route_isolator.conventions import FrameworkConventions
from route_isolator.errors import PATH_REWRITE, StepWarning, record_warning
from route_isolator.fsutil import write_text


def derive_build_source_root(
    project_root: pathlib.Path,
    conventions: FrameworkConventions,
) -> pathlib.Path | None:
    """Derive the build checkout root from the standalone output root.

    ``/src/repo/apps/web/.next/standalone`` with ``app_subdir="apps/web"``
    yields ``/src/repo``. When the exact suffix does not match, the path is cut
    at its first ``dist_dir`` component and walked up one level per
    ``app_subdir`` component.

    :param project_root: Standalone output root used during the build.
    :param conventions: Framework conventions.
    :returns: Build source root, or ``None`` if the path structure is unexpected.
    """

    root_parts: tuple[str, ...] = pathlib.Path(os.path.abspath(project_root)).parts
    suffix_parts: tuple[str, ...] = pathlib.PurePosixPath(conventions.standalone_suffix()).parts

    source_parts: tuple[str, ...] | None = None
    if len(root_parts) > len(suffix_parts) and root_parts[len(root_parts) - len(suffix_parts) :] == suffix_parts:
        source_parts = root_parts[0 : len(root_parts) - len(suffix_parts)]
    elif conventions.dist_dir in root_parts:
        idx: int = root_parts.index(conventions.dist_dir)
        up: int = len(pathlib.PurePosixPath(conventions.app_subdir).parts) if len(conventions.app_subdir) > 0 else 0
        if idx - up >= 1:
            source_parts = root_parts[0 : idx - up]

    if source_parts is None or len(source_parts) <= 1:
        return None
    return pathlib.Path(*source_parts)


def rewrite_absolute_paths(
    *,
    isolate_dir: pathlib.Path,
    build_source_root: pathlib.Path | None,
    container_root: str,
    relpaths: list[str],
    logger: logging.Logger | None = None,
) -> list[StepWarning]:
    """Replace every occurrence of ``build_source_root`` with ``container_root``.

    :param isolate_dir: Isolate directory.
    :param build_source_root: Build checkout root (``None`` skips the rewrite).
    :param container_root: Container execution root.
    :param relpaths: Files to rewrite, relative to ``isolate_dir``.
    :param logger: Optional logger.
    :returns: Recoverable warnings.
    """

    if logger is None:
        logger = logging.getLogger("route_isolator")

    warnings: list[StepWarning] = []
    if build_source_root is None:
        record_warning(
            warnings,
            kind=PATH_REWRITE,
            subject=str(isolate_dir),
            message="build source root could not be determined; the isolate may not boot in the container",
            logger=logger,
        )
        return warnings

    needle: str = str(build_source_root)
    if len(needle) == 0 or needle == build_source_root.anchor:
        record_warning(
            warnings,
            kind=PATH_REWRITE,
            subject=str(isolate_dir),
            message=f"refusing to rewrite filesystem root {needle!r}",
            logger=logger,
        )
        return warnings

    for relpath in relpaths:
        path: pathlib.Path = isolate_dir / relpath
        if path.is_file() is False:
            record_warning(warnings, kind=PATH_REWRITE, subject=relpath, message="file not found", logger=logger)
            continue
        try:
            content: str = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            record_warning(warnings, kind=PATH_REWRITE, subject=relpath, message=f"cannot read: {e}", logger=logger)
            continue

        count: int = content.count(needle)
        if count == 0:
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"route-isolator: no build paths in {relpath}")
            continue

        try:
            write_text(path, content.replace(needle, container_root))
        except OSError as e:
            record_warning(warnings, kind=PATH_REWRITE, subject=relpath, message=f"cannot write: {e}", logger=logger)
            continue
        logger.info(f"route-isolator: rewrote {count} build path(s) in {relpath} ({needle} -> {container_root})")

    return warnings


def rewrite_static_prefix(
    content: str,
    *,
    static_prefix: str = "/_next/static/",
    replacement: str = "static/",
) -> str | None:
    """Patch the JSON object embedded in a client-reference manifest module.

    The manifest is ``<lhs> = {...};``. Every string value containing
    ``static_prefix`` has its first occurrence replaced.

    :param content: Manifest module source.
    :param static_prefix: Prefix to replace.
    :param replacement: Replacement text.
    :returns: Patched source, or ``None`` if the format is not recognized.
    """

    assignment: int = content.find("=")
    json_start: int = content.find("{", assignment) if assignment != -1 else -1
    json_end: int = content.rfind("}") if json_start != -1 else -1
    if assignment == -1 or json_start == -1 or json_end <= json_start:
        return None

    try:
        parsed: Any = json.loads(content[json_start : json_end + 1])
    except json.JSONDecodeError:
        return None

    def update(value: Any) -> Any:
        if isinstance(value, str) is True:
            return value.replace(static_prefix, replacement, 1)
        if isinstance(value, list) is True:
            return [update(v) for v in value]
        if isinstance(value, dict) is True:
            return {k: update(v) for k, v in value.items()}
        return value

    updated: str = json.dumps(update(parsed), separators=(",", ":"), ensure_ascii=False)
    return content[0:json_start] + updated + content[json_end + 1 :]


_ASSET_PREFIX_RE: re.Pattern[str] = re.compile(r'"assetPrefix"\s*:\s*"[^"]*"')


def set_asset_prefix(content: str, asset_prefix: str) -> str | None:
    """Hard-code ``assetPrefix`` in the boot script's embedded config.

    :param content: Boot script source.
    :param asset_prefix: Asset prefix URL.
    :returns: Patched source, or ``None`` if no ``assetPrefix`` property exists.
    """

    if _ASSET_PREFIX_RE.search(content) is None:
        return None
    return _ASSET_PREFIX_RE.sub(lambda _m: f'"assetPrefix":{json.dumps(asset_prefix)}', content)


def inject_asset_prefix_override(content: str, marker: str) -> str | None:
    """Insert a runtime ``ASSET_PREFIX`` override before the standalone config assignment.

    :param content: Boot script source.
    :param marker: Line prefix of the standalone config assignment.
    :returns: Patched source, or ``None`` if the marker is absent or already patched.
    """

    if marker not in content or "process.env.ASSET_PREFIX" in content:
        return None
    patch: str = (
        "\n"
        "if (process.env.ASSET_PREFIX) {\n"
        "  nextConfig.assetPrefix = process.env.ASSET_PREFIX;\n"
        "}\n"
    )
    return content.replace(marker, patch + marker, 1)


def apply_asset_prefix(
    *,
    isolate_dir: pathlib.Path,
    conventions: FrameworkConventions,
    asset_prefix: str,
    logger: logging.Logger | None = None,
) -> list[StepWarning]:
    """Point an isolate's client assets at an external asset host.

    Hard-codes ``assetPrefix`` in the boot script and rewrites the static
    prefix of every client-reference manifest under the server app dir.

    :param isolate_dir: Isolate directory.
    :param conventions: Framework conventions.
    :param asset_prefix: Asset prefix URL.
    :param logger: Optional logger.
    :returns: Recoverable warnings.
    """

    if logger is None:
        logger = logging.getLogger("route_isolator")

    warnings: list[StepWarning] = []
    boot_rel: str = conventions.boot_script_relpath()
    boot: pathlib.Path = isolate_dir / boot_rel
    try:
        patched: str | None = set_asset_prefix(boot.read_text(encoding="utf-8"), asset_prefix)
        if patched is None:
            record_warning(
                warnings, kind=PATH_REWRITE, subject=boot_rel, message="no assetPrefix property to patch", logger=logger
            )
        else:
            write_text(boot, patched)
            logger.info(f"route-isolator: set assetPrefix={asset_prefix} in {boot_rel}")
    except (OSError, UnicodeDecodeError) as e:
        record_warning(warnings, kind=PATH_REWRITE, subject=boot_rel, message=f"cannot patch: {e}", logger=logger)

    server_app: pathlib.Path = isolate_dir / conventions.server_app_relpath()
    if server_app.is_dir() is False:
        return warnings

    for manifest in sorted(server_app.rglob("*" + conventions.client_manifest_suffix)):
        rel: str = manifest.relative_to(isolate_dir).as_posix()
        try:
            patched_manifest: str | None = rewrite_static_prefix(manifest.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            record_warning(warnings, kind=PATH_REWRITE, subject=rel, message=f"cannot read: {e}", logger=logger)
            continue
        if patched_manifest is None:
            record_warning(warnings, kind=PATH_REWRITE, subject=rel, message="unrecognized manifest format", logger=logger)
            continue
        write_text(manifest, patched_manifest)

    return warnings
