"""Integration tests for dependency closure merging on a fake standalone build."""

import json
import pathlib

import pytest

from route_isolator.closure import ClosureContext, build_closure, force_dynamic_routes
from route_isolator.errors import (
    CLIENT_ASSETS,
    IMPLICIT_DEPENDENCY,
    PARTIAL_COPY,
    IsolationError,
    NotFoundError,
    ResolverError,
)


def _tree(root: pathlib.Path) -> dict[str, bytes]:
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


def test_end_to_end_closure(standalone_build, tmp_path):
    isolate = tmp_path / "isolate"

    result = build_closure(
        entrypoint=standalone_build.entry("dashboard"),
        project_root=standalone_build.project_root,
        isolate_dir=isolate,
        resolver=lambda manifest: ["/_next/static/chunks/app.js"],
    )

    copied = set(result.copied)
    assert {
        ".next/server/app/dashboard/page.js",
        "server.js",
        "node_modules/react/index.js",
        ".next/server/chunks/1.js",
        ".next/server/app/layout.js",
        "node_modules/styled-jsx/index.js",
        ".next/server/app/_not-found/page.js",
        ".next/BUILD_ID",
        ".next/required-server-files.json",
        ".next/routes-manifest.json",
        ".next/static/chunks/app.js",
    } <= copied
    # Pages of other routes stay out of the isolate.
    assert not (isolate / ".next" / "server" / "app" / "page.js").exists()

    routes = json.loads((isolate / ".next" / "routes-manifest.json").read_text())
    assert routes["staticRoutes"] == []
    assert routes["dynamicRoutes"] == []

    build_root = str(standalone_build.build_root)
    assert build_root not in (isolate / ".next" / "required-server-files.json").read_text()
    assert build_root not in (isolate / "server.js").read_text()
    assert "/app/.next/standalone" in (isolate / "server.js").read_text()

    # The source build is never modified.
    assert str(standalone_build.build_root) in (standalone_build.project_root / "server.js").read_text()
    assert json.loads((standalone_build.project_root / ".next" / "routes-manifest.json").read_text())["staticRoutes"]


def test_closure_without_implicit_traces_is_exact(tmp_path, write_file):
    root = tmp_path / "repo" / ".next" / "standalone"
    write_file(root / "server.js", "require('next')\n")
    write_file(root / ".next" / "BUILD_ID", "b1")
    write_file(root / ".next" / "routes-manifest.json", {"staticRoutes": [{"page": "/about"}]})
    write_file(root / ".next" / "server" / "app" / "about" / "page.js", "module.exports = require('pkg')\n")
    write_file(
        root / ".next" / "server" / "app" / "about" / "page.js.nft.json",
        {"version": 1, "files": ["../../../../node_modules/pkg/index.js"]},
    )
    write_file(root / "node_modules" / "pkg" / "index.js", "module.exports = 1\n")
    # Present in the build but not part of the closure.
    write_file(root / "node_modules" / "other" / "index.js", "")
    write_file(root / ".next" / "server" / "app" / "contact" / "page.js", "")
    isolate = tmp_path / "isolate"

    build_closure(entrypoint=".next/server/app/about/page.js", project_root=root, isolate_dir=isolate)

    assert set(_tree(isolate)) == {
        ".next/server/app/about/page.js",
        "node_modules/pkg/index.js",
        "server.js",
        ".next/BUILD_ID",
        ".next/routes-manifest.json",
    }


def test_closure_is_idempotent(standalone_build, tmp_path):
    isolate = tmp_path / "isolate"
    kwargs = dict(
        entrypoint=standalone_build.entry("dashboard"),
        project_root=standalone_build.project_root,
        isolate_dir=isolate,
    )

    first = build_closure(**kwargs)
    snapshot = _tree(isolate)
    (isolate / "stale.txt").write_text("left over")
    second = build_closure(**kwargs)

    assert first.files == second.files
    assert _tree(isolate) == snapshot


def test_missing_optional_files_become_warnings(standalone_build, tmp_path):
    (standalone_build.project_root / ".next" / "server" / "chunks" / "1.js").unlink()
    (standalone_build.project_root / ".next" / "build-manifest.json").unlink()

    result = build_closure(
        entrypoint=standalone_build.entry("dashboard"),
        project_root=standalone_build.project_root,
        isolate_dir=tmp_path / "isolate",
    )

    partial = [w for w in result.warnings if w.kind == PARTIAL_COPY]
    assert [w.subject for w in partial] == [".next/server/chunks/1.js"]
    assert ".next/server/chunks/1.js" not in result.copied


def test_missing_build_id_is_fatal(standalone_build, tmp_path):
    (standalone_build.project_root / ".next" / "BUILD_ID").unlink()

    with pytest.raises(NotFoundError):
        build_closure(
            entrypoint=standalone_build.entry("dashboard"),
            project_root=standalone_build.project_root,
            isolate_dir=tmp_path / "isolate",
        )


def test_missing_entrypoint_trace_is_fatal(standalone_build, tmp_path):
    with pytest.raises(NotFoundError):
        build_closure(
            entrypoint=standalone_build.project_root / ".next" / "server" / "app" / "nope" / "page.js",
            project_root=standalone_build.project_root,
            isolate_dir=tmp_path / "isolate",
        )


def test_missing_boot_script_is_fatal(standalone_build, tmp_path):
    (standalone_build.project_root / "server.js").unlink()

    with pytest.raises(NotFoundError):
        build_closure(
            entrypoint=standalone_build.entry("dashboard"),
            project_root=standalone_build.project_root,
            isolate_dir=tmp_path / "isolate",
        )


def test_isolate_inside_project_root_parent_is_refused(standalone_build):
    with pytest.raises(IsolationError):
        build_closure(
            entrypoint=standalone_build.entry("dashboard"),
            project_root=standalone_build.project_root,
            isolate_dir=standalone_build.project_root.parent,
        )


def test_malformed_implicit_trace_is_a_warning(standalone_build, tmp_path, write_file):
    write_file(standalone_build.project_root / ".next" / "server" / "app" / "layout.js.nft.json", "{broken")

    result = build_closure(
        entrypoint=standalone_build.entry("dashboard"),
        project_root=standalone_build.project_root,
        isolate_dir=tmp_path / "isolate",
    )

    assert [w.kind for w in result.warnings if w.kind == IMPLICIT_DEPENDENCY] == [IMPLICIT_DEPENDENCY]
    assert "node_modules/styled-jsx/index.js" not in result.files


def test_custom_probe_is_merged(standalone_build, tmp_path):
    def probe(ctx: ClosureContext) -> pathlib.Path:
        return ctx.project_root / (ctx.conventions.page_entry_relpath("home") + ctx.conventions.trace_suffix)

    result = build_closure(
        entrypoint=standalone_build.entry("dashboard"),
        project_root=standalone_build.project_root,
        isolate_dir=tmp_path / "isolate",
        probes=(probe,),
    )

    assert ".next/server/app/page.js" in result.files
    assert ".next/server/app/layout.js" not in result.files


def test_resolver_failure_is_a_warning(standalone_build, tmp_path):
    def failing(manifest: pathlib.Path) -> list[str]:
        raise ResolverError("boom")

    result = build_closure(
        entrypoint=standalone_build.entry("dashboard"),
        project_root=standalone_build.project_root,
        isolate_dir=tmp_path / "isolate",
        resolver=failing,
    )

    assert [w.kind for w in result.warnings if w.kind == CLIENT_ASSETS] == [CLIENT_ASSETS]


def test_asset_prefix_is_applied(standalone_build, tmp_path):
    isolate = tmp_path / "isolate"

    build_closure(
        entrypoint=standalone_build.entry("dashboard"),
        project_root=standalone_build.project_root,
        isolate_dir=isolate,
        asset_prefix="https://cdn.example.com",
    )

    assert '"assetPrefix":"https://cdn.example.com"' in (isolate / "server.js").read_text()


def test_force_dynamic_routes(tmp_path, write_file):
    manifest = write_file(tmp_path / "routes-manifest.json", {"staticRoutes": [{"page": "/a"}], "other": 1})

    assert force_dynamic_routes(manifest) is True
    assert json.loads(manifest.read_text()) == {"staticRoutes": [], "other": 1}

    untouched = write_file(tmp_path / "r2.json", {"dynamicRoutes": []})
    assert force_dynamic_routes(untouched) is False
