"""Tests for the runtime package repair engine."""

import json
import logging
import pathlib

from route_isolator.closure import build_closure
from route_isolator.conventions import FrameworkConventions
from route_isolator.errors import REPAIR_STEP
from route_isolator.repair import (
    iter_package_dirs,
    override_framework_descriptor,
    prune_node_modules,
    repair,
    synthesize_alias_dirs,
    synthesize_entry_proxies,
)


def _files(root: pathlib.Path) -> set[str]:
    return {p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()}


def _isolate(standalone_build, tmp_path) -> pathlib.Path:
    isolate = tmp_path / "isolate"
    build_closure(
        entrypoint=standalone_build.entry("dashboard"),
        project_root=standalone_build.project_root,
        isolate_dir=isolate,
    )
    return isolate


def test_repair_on_isolate(standalone_build, tmp_path):
    isolate = _isolate(standalone_build, tmp_path)
    nm = isolate / "node_modules"

    report = repair(isolate_dir=isolate, project_root=standalone_build.project_root)

    assert report.warnings == ()
    assert set(report.restored) == {"next", "react"}
    assert (nm / "react" / "cjs" / "react.production.js").is_file()
    assert "styled-jsx/package.json" in report.descriptors

    descriptor = json.loads((nm / "next" / "package.json").read_text())
    assert descriptor == {"name": "next", "version": "15.1.0", "main": "index.js"}
    assert (nm / "next" / "index.js").read_text() == "module.exports = require('./dist/server/next')\n"

    shim = nm / "react-server-dom-webpack"
    assert json.loads((shim / "package.json").read_text())["exports"] == {
        "./server.node": "./server.node.js",
        "./client": "./client.js",
        "./server.edge": "./server.edge.js",
    }
    assert (shim / "server.node.js").read_text() == "// react-server-dom-webpack-server.node.production.js\n"
    assert (shim / "client.js").read_text() == "// react-server-dom-webpack-client.browser.production.js\n"


def test_repair_is_idempotent(standalone_build, tmp_path):
    isolate = _isolate(standalone_build, tmp_path)

    repair(isolate_dir=isolate, project_root=standalone_build.project_root)
    first = {p: (isolate / p).read_bytes() for p in _files(isolate)}
    repair(isolate_dir=isolate, project_root=standalone_build.project_root)
    second = {p: (isolate / p).read_bytes() for p in _files(isolate)}

    assert first == second


def test_repair_without_trusted_root_warns_and_continues(standalone_build, tmp_path):
    isolate = _isolate(standalone_build, tmp_path)

    report = repair(
        isolate_dir=isolate,
        project_root=standalone_build.project_root,
        trusted_root=tmp_path / "nowhere",
    )

    assert report.restored == ()
    assert [w.subject for w in report.warnings] == ["shim"]
    assert json.loads((isolate / "node_modules" / "next" / "package.json").read_text())["version"] == "0.0.0"
    assert (isolate / "node_modules" / "next" / "index.js").read_text() == "module.exports = {};\n"


def test_failing_step_does_not_stop_later_steps(tmp_path, write_file):
    isolate = tmp_path / "isolate"
    nm = isolate / "node_modules"
    (nm / "next" / "package.json").mkdir(parents=True)
    write_file(nm / "lib" / "index.js.map", "{}")

    report = repair(isolate_dir=isolate, project_root=tmp_path / "project", trusted_root=tmp_path / "nowhere")

    assert any(w.kind == REPAIR_STEP and w.subject == "framework-descriptor" for w in report.warnings)
    assert "lib/index.js.map" in report.pruned
    assert not (nm / "lib" / "index.js.map").exists()


def test_entry_proxies_never_overwrite(tmp_path, write_file):
    nm = tmp_path / "node_modules"
    write_file(nm / "has-entry" / "package.json", {"main": "lib/main.js"})
    write_file(nm / "has-entry" / "index.js", "original")
    write_file(nm / "plain" / "package.json", {"main": "lib/main.js"})
    write_file(nm / "dotted" / "package.json", {"main": "./dist/x.js"})
    write_file(nm / "@scope" / "pkg" / "package.json", {"main": "build/pkg.js"})
    write_file(nm / "self" / "package.json", {"main": "index.js"})
    write_file(nm / "no-main" / "package.json", {"name": "no-main"})
    write_file(nm / "broken" / "package.json", "{not json")
    write_file(nm / "next" / "dist" / "compiled" / "cookie" / "package.json", {"main": "cookie.js"})
    warnings = []

    written = synthesize_entry_proxies(
        modules_dir=nm,
        conventions=FrameworkConventions(),
        warnings=warnings,
        logger=logging.getLogger("route_isolator"),
    )

    assert sorted(written) == [
        "@scope/pkg/index.js",
        "dotted/index.js",
        "next/dist/compiled/cookie/index.js",
        "plain/index.js",
    ]
    assert (nm / "has-entry" / "index.js").read_text() == "original"
    assert (nm / "plain" / "index.js").read_text() == "module.exports = require('./lib/main.js');\n"
    assert (nm / "dotted" / "index.js").read_text() == "module.exports = require('./dist/x.js');\n"
    assert not (nm / "self" / "index.js").exists()
    assert not (nm / "no-main" / "index.js").exists()
    assert warnings == []


def test_entry_proxies_skip_mains_resolving_to_index(tmp_path, write_file):
    nm = tmp_path / "node_modules"
    for i, main in enumerate(("index", "./index", ".", "./", "index.js", "./index.js/")):
        write_file(nm / f"self-{i}" / "package.json", {"main": main})
    write_file(nm / "indexer" / "package.json", {"main": "indexer"})

    written = synthesize_entry_proxies(
        modules_dir=nm,
        conventions=FrameworkConventions(),
        warnings=[],
        logger=logging.getLogger("route_isolator"),
    )

    assert written == ["indexer/index.js"]
    assert (nm / "indexer" / "index.js").read_text() == "module.exports = require('./indexer');\n"


def test_iter_package_dirs_covers_scopes_and_compiled(tmp_path):
    nm = tmp_path / "node_modules"
    for rel in ("a", "@s/b", ".bin", "next/dist/compiled/c"):
        (nm / rel).mkdir(parents=True)

    dirs = [p.relative_to(nm).as_posix() for p in iter_package_dirs(nm, FrameworkConventions())]

    assert dirs == ["@s/b", "a", "next", "next/dist/compiled/c"]


def test_alias_dirs(tmp_path, write_file):
    nm = tmp_path / "node_modules"
    write_file(nm / "@swc" / "helpers" / "cjs" / "_interop_require_default.cjs", "")
    write_file(nm / "@swc" / "helpers" / "cjs" / "README.txt", "")
    write_file(nm / "@swc" / "helpers" / "_" / "_existing.js", "keep")
    write_file(nm / "@swc" / "helpers" / "cjs" / "_existing.cjs", "")

    written = synthesize_alias_dirs(
        modules_dir=nm, conventions=FrameworkConventions(), logger=logging.getLogger("t")
    )

    assert written == ["@swc/helpers/_/_interop_require_default.js"]
    assert (nm / "@swc/helpers/_/_interop_require_default.js").read_text() == (
        "module.exports = require('../cjs/_interop_require_default.cjs');\n"
    )
    assert (nm / "@swc/helpers/_/_existing.js").read_text() == "keep"


def test_override_keeps_existing_entry(tmp_path, write_file):
    nm = tmp_path / "node_modules"
    write_file(nm / "next" / "package.json", {"name": "next", "version": "14.2.3", "exports": {"./x": "./x.js"}})
    write_file(nm / "next" / "index.js", "real")

    override_framework_descriptor(
        modules_dir=nm, conventions=FrameworkConventions(), logger=logging.getLogger("t")
    )

    assert json.loads((nm / "next" / "package.json").read_text()) == {
        "name": "next",
        "version": "14.2.3",
        "main": "index.js",
    }
    assert (nm / "next" / "index.js").read_text() == "real"


def test_prune_example(tmp_path, write_file):
    nm = tmp_path / "node_modules"
    for rel in ("a/index.js", "a/index.d.ts", "a/test.spec.js", "b-darwin/bin"):
        write_file(nm / rel, "x")

    removed = prune_node_modules(nm)

    assert _files(nm) == {"a/index.js"}
    assert removed == ["a/index.d.ts", "a/test.spec.js", "b-darwin"]


def test_prune_types_docs_and_foreign_binaries(tmp_path, write_file):
    nm = tmp_path / "node_modules"
    for rel in (
        "@types/node/index.d.ts",
        "pkg/README.md",
        "pkg/CHANGELOG.markdown",
        "pkg/dist/x.js.map",
        "pkg/dist/x.test.js",
        "pkg/dist/x.js",
        "@esbuild/win32-x64/esbuild.exe",
        "@esbuild/linux-x64/bin/esbuild",
        "fsevents/lib/macos-helper.node",
    ):
        write_file(nm / rel, "x")

    prune_node_modules(nm)

    assert _files(nm) == {"pkg/dist/x.js", "@esbuild/linux-x64/bin/esbuild"}


def test_prune_markers_ignore_path_above_node_modules(tmp_path, write_file):
    nm = tmp_path / "windows-builds" / "node_modules"
    write_file(nm / "pkg" / "index.js", "x")

    assert prune_node_modules(nm) == []
    assert (nm / "pkg" / "index.js").is_file()
