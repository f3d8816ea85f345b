"""Shared fixtures: fake standalone builds and source applications on disk."""

from dataclasses import dataclass
import json
import pathlib
from typing import Any, Callable

import pytest

from route_isolator.conventions import FrameworkConventions

WriteFile = Callable[..., pathlib.Path]


def _write(path: pathlib.Path, content: str | dict[str, Any] | list[Any] = "") -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, (dict, list)):
        content = json.dumps(content)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def write_file() -> WriteFile:
    """Return a helper that writes text (or JSON for dicts/lists), creating parent dirs."""
    return _write


@dataclass
class StandaloneBuild:
    build_root: pathlib.Path
    project_root: pathlib.Path
    conventions: FrameworkConventions

    def entry(self, route: str) -> pathlib.Path:
        return self.project_root / self.conventions.page_entry_relpath(route)


def make_standalone_build(root: pathlib.Path) -> StandaloneBuild:
    """Lay out a minimal standalone build under ``root/repo``.

    Routes: ``home`` (root page) and ``dashboard``. The trusted ``node_modules``
    of the checkout carries the full framework package.
    """

    build_root: pathlib.Path = root / "repo"
    project_root: pathlib.Path = build_root / ".next" / "standalone"
    dist: pathlib.Path = project_root / ".next"
    app: pathlib.Path = dist / "server" / "app"

    _write(
        project_root / "server.js",
        "const path = require('path')\n"
        f"const dir = '{build_root}/.next/standalone'\n"
        'const nextConfig = {"assetPrefix":"","distDir":"./.next"}\n'
        "process.env.__NEXT_PRIVATE_STANDALONE_CONFIG = JSON.stringify(nextConfig)\n"
        "require('next')\n",
    )
    _write(dist / "BUILD_ID", "build-1234")
    _write(
        dist / "required-server-files.json",
        {"version": 1, "config": {"outputFileTracingRoot": str(build_root)}, "appDir": str(build_root)},
    )
    _write(dist / "routes-manifest.json", {"version": 3, "staticRoutes": [{"page": "/"}], "dynamicRoutes": []})
    _write(dist / "build-manifest.json", {"pages": {}})

    _write(app / "dashboard" / "page.js", "module.exports = require('../../chunks/1.js')\n")
    _write(
        app / "dashboard" / "page.js.nft.json",
        {
            "version": 1,
            "files": [
                "../../../../node_modules/react/index.js",
                "../../../../node_modules/react/package.json",
                "../../chunks/1.js",
                "../../../../../../outside.js",
            ],
        },
    )
    _write(
        app / "dashboard" / "page_client-reference-manifest.js",
        'globalThis.__RSC_MANIFEST["/dashboard/page"] = {"clientModules":{"a":{"chunks":["/_next/static/chunks/app.js"]}}};\n',
    )
    _write(app / "page.js", "module.exports = {}\n")
    _write(app / "page.js.nft.json", {"version": 1, "files": ["../../../node_modules/react/index.js"]})
    _write(app / "layout.js", "module.exports = {}\n")
    _write(app / "layout.js.nft.json", {"version": 1, "files": ["../../../node_modules/styled-jsx/index.js"]})
    _write(app / "_not-found" / "page.js", "module.exports = {}\n")
    _write(app / "_not-found" / "page.js.nft.json", {"version": 1, "files": []})
    _write(dist / "server" / "chunks" / "1.js", "module.exports = 1\n")

    nm: pathlib.Path = project_root / "node_modules"
    _write(nm / "react" / "index.js", "module.exports = require('./cjs/react.production.js')\n")
    _write(nm / "react" / "package.json", {"name": "react", "version": "19.0.0", "main": "index.js"})
    _write(nm / "styled-jsx" / "index.js", "module.exports = {}\n")
    _write(nm / "styled-jsx" / "package.json", {"name": "styled-jsx", "version": "5.1.6"})

    _write(build_root / ".next" / "static" / "chunks" / "app.js", "console.log('app')\n")

    trusted: pathlib.Path = build_root / "node_modules"
    _write(
        trusted / "next" / "package.json",
        {"name": "next", "version": "15.1.0", "main": "./dist/server/next.js", "exports": {".": "./index.js"}},
    )
    _write(trusted / "next" / "index.js", "module.exports = require('./dist/server/next')\n")
    _write(trusted / "next" / "dist" / "server" / "next.js", "module.exports = {}\n")
    rsdw: pathlib.Path = trusted / "next" / "dist" / "compiled" / "react-server-dom-webpack" / "cjs"
    for name in (
        "react-server-dom-webpack-client.browser.development.js",
        "react-server-dom-webpack-client.browser.production.js",
        "react-server-dom-webpack-server.edge.production.js",
        "react-server-dom-webpack-server.node.development.js",
        "react-server-dom-webpack-server.node.production.js",
    ):
        _write(rsdw / name, f"// {name}\n")
    _write(trusted / "react" / "index.js", "module.exports = require('./cjs/react.production.js')\n")
    _write(trusted / "react" / "cjs" / "react.production.js", "module.exports = {}\n")
    _write(trusted / "react" / "package.json", {"name": "react", "version": "19.0.0", "main": "index.js"})

    return StandaloneBuild(build_root=build_root, project_root=project_root, conventions=FrameworkConventions())


@pytest.fixture
def standalone_build(tmp_path: pathlib.Path) -> StandaloneBuild:
    return make_standalone_build(tmp_path)


@pytest.fixture
def source_app(tmp_path: pathlib.Path) -> pathlib.Path:
    """A source application with four routes under ``src/app``."""

    app: pathlib.Path = tmp_path / "shop"
    _write(app / "package.json", {"name": "shop", "scripts": {"build": "next build"}})
    _write(app / "next.config.ts", "export default { output: 'standalone' }\n")
    _write(app / "distance.ts", "export const d = 1\n")
    _write(app / "src" / "app" / "layout.tsx", "export default function Layout() {}\n")
    _write(app / "src" / "app" / "page.tsx", "export default function Home() {}\n")
    _write(app / "src" / "app" / "cart" / "page.tsx", "export default function Cart() {}\n")
    _write(app / "src" / "app" / "cart" / "loading.tsx", "export default function Loading() {}\n")
    _write(app / "src" / "app" / "users" / "page.tsx", "export default function Users() {}\n")
    _write(app / "src" / "app" / "users" / "page.js", "module.exports = {}\n")
    _write(app / "src" / "app" / "users" / "[id]" / "page.tsx", "export default function User() {}\n")
    _write(app / ".next" / "BUILD_ID", "stale")
    _write(app / "node_modules" / "react" / "index.js", "")
    _write(app / "dist" / "old.js", "")
    _write(app / ".git" / "HEAD", "ref: refs/heads/main\n")
    return app
