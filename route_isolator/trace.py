"""Dependency trace reading and client-reference resolution.

A dependency trace (``<module>.nft.json``) lists, relative to the trace file's
own directory, every file the traced module touches at runtime::

    {"version": 1, "files": ["../../node_modules/react/index.js", ...]}

The trace never lists its own subject module.
"""

from dataclasses import dataclass
import json
import logging
import os
import pathlib
import posixpath
import subprocess
from typing import Any

from route_isolator.errors import MalformedInputError, NotFoundError, ResolverError

ClosureSet = frozenset[str]


@dataclass(frozen=True, slots=True)
class DependencyTrace:
    """A parsed trace file.

    :ivar path: Trace file path.
    :ivar version: Trace format version.
    :ivar files: Listed files, relative to the trace file's directory.
    """

    path: pathlib.Path
    version: int
    files: tuple[str, ...]


def trace_path_for(module_path: pathlib.Path, suffix: str = ".nft.json") -> pathlib.Path:
    """Return the trace file path of a module.

    :param module_path: Traced module path.
    :param suffix: Trace suffix.
    :returns: Trace file path.
    """

    return module_path.with_name(module_path.name + suffix)


def entrypoint_for(trace_path: pathlib.Path, suffix: str = ".nft.json") -> pathlib.Path:
    """Return the module a trace file describes.

    :param trace_path: Trace file path.
    :param suffix: Trace suffix.
    :returns: Module path.
    :raises MalformedInputError: If the file name does not end with ``suffix``.
    """

    if trace_path.name.endswith(suffix) is False or len(trace_path.name) == len(suffix):
        raise MalformedInputError(f"Trace file name does not end with {suffix!r}: {trace_path}")
    return trace_path.with_name(trace_path.name[0 : -len(suffix)])


def read_trace(trace_path: pathlib.Path) -> DependencyTrace:
    """Read and validate a trace file.

    :param trace_path: Trace file path.
    :returns: Parsed trace.
    :raises NotFoundError: If the file does not exist.
    :raises MalformedInputError: If the file is not a valid trace.
    """

    try:
        text: str = trace_path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise NotFoundError(f"Trace file not found: {trace_path}") from e
    except OSError as e:
        raise MalformedInputError(f"Cannot read trace file {trace_path}: {e}") from e

    try:
        raw: Any = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedInputError(f"Trace file is not valid JSON: {trace_path}: {e}") from e

    if isinstance(raw, dict) is False:
        raise MalformedInputError(f"Trace root must be an object: {trace_path}")

    files: Any = raw.get("files")
    if isinstance(files, list) is False:
        raise MalformedInputError(f"Trace 'files' must be a list: {trace_path}")
    for f in files:
        if isinstance(f, str) is False:
            raise MalformedInputError(f"Trace 'files' entries must be strings: {trace_path}: {f!r}")

    version: Any = raw.get("version", 1)
    if isinstance(version, bool) is True or isinstance(version, int) is False:
        raise MalformedInputError(f"Trace 'version' must be an integer: {trace_path}: {version!r}")

    return DependencyTrace(path=trace_path, version=version, files=tuple(files))


def parse_trace(
    trace_path: pathlib.Path,
    project_root: pathlib.Path,
    *,
    logger: logging.Logger | None = None,
) -> ClosureSet:
    """Parse a trace into paths relative to ``project_root``.

    Entries that resolve outside ``project_root`` are dropped with a warning;
    partial traces are expected.

    :param trace_path: Trace file path.
    :param project_root: Root the returned paths are relative to.
    :param logger: Optional logger.
    :returns: Root-relative POSIX paths, never containing ``..`` segments.
    :raises NotFoundError: If the trace does not exist.
    :raises MalformedInputError: If the trace is not valid.
    """

    if logger is None:
        logger = logging.getLogger("route_isolator")

    trace: DependencyTrace = read_trace(trace_path)
    root_abs: str = os.path.abspath(project_root)
    trace_dir: str = os.path.dirname(os.path.abspath(trace_path))

    out: set[str] = set()
    dropped: int = 0
    for entry in trace.files:
        rel: str | None = relativize(os.path.join(trace_dir, entry), root_abs)
        if rel is None:
            dropped += 1
            logger.warning(f"route-isolator: dropping trace entry outside {project_root}: {entry} (trace={trace_path})")
            continue
        out.add(rel)

    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"route-isolator: parsed {trace_path} ({len(out)} files, {dropped} dropped)")
    return frozenset(out)


def relativize(path: str, root: str) -> str | None:
    """Express ``path`` relative to ``root`` without traversal.

    Both paths are normalized lexically first.

    :param path: Absolute path.
    :param root: Absolute root.
    :returns: Relative POSIX path, or ``None`` if ``path`` is ``root`` itself or lies outside it.
    """

    norm_path: str = os.path.normpath(path)
    norm_root: str = os.path.normpath(root)
    try:
        rel: str = os.path.relpath(norm_path, norm_root)
    except ValueError:
        # Different drives on Windows.
        return None

    rel_posix: str = pathlib.PurePath(rel).as_posix()
    if rel_posix == "." or rel_posix == ".." or rel_posix.startswith("../") is True:
        return None
    if posixpath.isabs(rel_posix) is True:
        return None
    return rel_posix


class ClientReferenceResolver:
    """Resolve a page's client-reference manifest into a flat chunk list.

    The manifest is a JavaScript module, so resolution is delegated to an
    external command that prints a JSON array of chunk paths on stdout.

    :ivar command: Command prefix; the manifest path is appended as the last argument.
    :ivar cwd: Optional working directory for the command.
    """

    def __init__(self, command: list[str] | tuple[str, ...], *, cwd: pathlib.Path | None = None) -> None:
        if len(command) == 0:
            raise ValueError("ClientReferenceResolver requires a non-empty command.")
        self.command: tuple[str, ...] = tuple(command)
        self.cwd: pathlib.Path | None = cwd

    def __repr__(self) -> str:
        return f"ClientReferenceResolver(command={list(self.command)!r}, cwd={self.cwd!r})"

    def __call__(self, manifest_path: pathlib.Path) -> list[str]:
        """Run the resolver.

        :param manifest_path: Client-reference manifest path.
        :returns: Chunk paths as printed by the resolver.
        :raises ResolverError: On launch failure, non-zero exit, or non-JSON output.
        """

        cmd: list[str] = [*self.command, str(manifest_path)]
        try:
            proc = subprocess.run(cmd, cwd=self.cwd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise ResolverError(f"Cannot run client-reference resolver {cmd[0]!r}: {e}") from e

        if proc.returncode != 0:
            raise ResolverError(
                f"Client-reference resolver failed (exit={proc.returncode}) for {manifest_path}: "
                f"{proc.stderr.strip() or proc.stdout.strip()}"
            )

        output: str = proc.stdout.strip()
        try:
            chunks: Any = json.loads(output)
        except json.JSONDecodeError as e:
            raise ResolverError(f"Client-reference resolver printed non-JSON output: {output[0:200]!r}") from e

        if isinstance(chunks, list) is False or not all(isinstance(c, str) for c in chunks):
            raise ResolverError(f"Client-reference resolver must print a JSON array of strings: {output[0:200]!r}")
        return list(chunks)


def client_manifest_for(entrypoint: pathlib.Path, manifest_suffix: str = "_client-reference-manifest.js") -> pathlib.Path:
    """Return the client-reference manifest path that sits next to a page module.

    ``server/app/dashboard/page.js`` maps to
    ``server/app/dashboard/page_client-reference-manifest.js``.

    :param entrypoint: Compiled page module.
    :param manifest_suffix: Suffix appended to the module stem.
    :returns: Manifest path (may not exist).
    """

    stem: str = entrypoint.name
    if stem.endswith(".js") is True:
        stem = stem[0:-3]
    return entrypoint.with_name(stem + manifest_suffix)


def normalize_chunk_path(chunk: str, prefixes: tuple[str, ...] = ("/", "_next/")) -> str | None:
    """Strip the URL prefixes of a client chunk path.

    ``/_next/static/chunks/a.js`` becomes ``static/chunks/a.js``.

    :param chunk: Chunk path as printed by the resolver.
    :param prefixes: Prefixes stripped in order (each at most once).
    :returns: Relative POSIX path, or ``None`` if the result is empty or escapes.
    """

    normalized: str = chunk
    for prefix in prefixes:
        if normalized.startswith(prefix) is True:
            normalized = normalized[len(prefix) :]

    normalized = posixpath.normpath(normalized) if len(normalized) > 0 else ""
    if normalized in {"", "."} or normalized == ".." or normalized.startswith("../") is True:
        return None
    if normalized.startswith("/") is True:
        return None
    return normalized
