"""Filesystem helpers shared by the zone generator, closure merger and repair engine."""

from dataclasses import dataclass
import os
import pathlib
import shutil


@dataclass(frozen=True, slots=True)
class CopyStats:
    """Stats collected while copying a directory tree.

    :ivar files_copied: Number of files copied.
    :ivar bytes_copied: Total bytes copied (best-effort).
    """

    files_copied: int
    bytes_copied: int


def is_excluded(relpath: pathlib.PurePosixPath, exclude_parts: list[tuple[str, ...]]) -> bool:
    """Check if a relative path falls under one of the excluded prefixes.

    Prefixes are matched per path component, so ``dist`` excludes ``dist/x``
    but not ``distance.ts``.

    :param relpath: Path relative to the copy source (POSIX).
    :param exclude_parts: Excluded prefixes, split into components.
    :returns: ``True`` if it matches an excluded prefix.
    """

    rel_tuple: tuple[str, ...] = relpath.parts
    for ex in exclude_parts:
        if len(ex) > 0 and len(rel_tuple) >= len(ex) and rel_tuple[0 : len(ex)] == ex:
            return True
    return False


def copy_tree_filtered(*, src: pathlib.Path, dst: pathlib.Path, exclude_relpaths: set[str]) -> CopyStats:
    """Copy a directory tree, skipping excluded relative-path prefixes.

    :param src: Source directory.
    :param dst: Destination directory.
    :param exclude_relpaths: Relative paths within ``src`` to exclude (POSIX).
    :returns: Copy statistics.
    """

    exclude_parts: list[tuple[str, ...]] = []
    for relpath in sorted(exclude_relpaths):
        exclude_parts.append(pathlib.PurePosixPath(relpath).parts)

    files_copied: int = 0
    bytes_copied: int = 0

    dst.mkdir(parents=True, exist_ok=True)

    for root_str, dirs, files in os.walk(src, topdown=True):
        root_path: pathlib.Path = pathlib.Path(root_str)
        rel_root: pathlib.Path = root_path.relative_to(src)
        rel_root_posix: pathlib.PurePosixPath = pathlib.PurePosixPath(rel_root.as_posix())

        keep_dirs: list[str] = []
        for d in sorted(dirs):
            if is_excluded(rel_root_posix / d, exclude_parts) is True:
                continue
            keep_dirs.append(d)
        dirs[:] = keep_dirs

        out_dir: pathlib.Path = dst / rel_root
        out_dir.mkdir(parents=True, exist_ok=True)

        for name in sorted(files):
            if name == ".DS_Store":
                continue
            if is_excluded(rel_root_posix / name, exclude_parts) is True:
                continue

            src_path: pathlib.Path = root_path / name
            dest_path: pathlib.Path = out_dir / name
            shutil.copy2(src_path, dest_path)
            files_copied += 1
            try:
                bytes_copied += src_path.stat().st_size
            except OSError:
                pass

    return CopyStats(files_copied=files_copied, bytes_copied=bytes_copied)


def copy_tree_all(*, src: pathlib.Path, dst: pathlib.Path) -> CopyStats:
    """Copy a directory tree without filtering, merging into ``dst``.

    :param src: Source directory.
    :param dst: Destination directory.
    :returns: Copy statistics.
    """

    files_copied: int = 0
    bytes_copied: int = 0
    dst.mkdir(parents=True, exist_ok=True)
    for p in sorted(src.rglob("*")):
        rel: pathlib.Path = p.relative_to(src)
        if p.is_dir() is True:
            (dst / rel).mkdir(parents=True, exist_ok=True)
            continue
        if p.is_file() is True:
            target_path: pathlib.Path = dst / rel
            target_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(p, target_path)
            files_copied += 1
            bytes_copied += p.stat().st_size
    return CopyStats(files_copied=files_copied, bytes_copied=bytes_copied)


def replace_tree(*, src: pathlib.Path, dst: pathlib.Path) -> CopyStats:
    """Replace ``dst`` entirely with a recursive copy of ``src``.

    :param src: Source directory.
    :param dst: Destination directory (removed first if present).
    :returns: Copy statistics.
    """

    remove_path(dst)
    return copy_tree_all(src=src, dst=dst)


def copy_file(*, src: pathlib.Path, dst: pathlib.Path) -> None:
    """Copy one file, creating the destination's parent directories.

    :param src: Source file.
    :param dst: Destination file.
    :raises FileNotFoundError: If ``src`` is missing or is not a regular file.
    """

    if src.is_file() is False:
        raise FileNotFoundError(f"No such file: {src}")
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dst)


def write_text(path: pathlib.Path, content: str) -> None:
    """Write a UTF-8 text file via a temporary sibling and an atomic rename.

    :param path: Destination file.
    :param content: File content.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp: pathlib.Path = path.with_name(f"{path.name}.tmp")
    tmp.write_text(content, encoding="utf-8")
    tmp.replace(path)


def remove_path(path: pathlib.Path) -> None:
    """Remove a file, symlink or directory tree if it exists.

    :param path: Path to remove.
    """

    if path.is_symlink() is True or path.is_file() is True:
        path.unlink()
        return
    if path.is_dir() is True:
        shutil.rmtree(path)


def reset_dir(path: pathlib.Path) -> None:
    """Ensure ``path`` is an existing, empty directory.

    :param path: Directory to reset.
    """

    remove_path(path)
    path.mkdir(parents=True, exist_ok=True)


def dir_size(path: pathlib.Path) -> int:
    """Return the total size of regular files under ``path`` (best-effort).

    :param path: Directory.
    :returns: Size in bytes.
    """

    total: int = 0
    for p in path.rglob("*"):
        try:
            if p.is_file() is True and p.is_symlink() is False:
                total += p.stat().st_size
        except OSError:
            continue
    return total
