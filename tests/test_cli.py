"""Tests for the command line interface."""

import json
import logging

import pytest

from route_isolator import cli


@pytest.fixture(autouse=True)
def _restore_logger():
    logger = logging.getLogger("route_isolator")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


def test_routes_command(source_app, capsys):
    assert cli.main(["routes", str(source_app)]) == 0

    assert capsys.readouterr().out.splitlines() == ["cart", "home", "users", "users/[id]"]


def test_zone_command(source_app, tmp_path, capsys):
    assert cli.main(["zone", str(source_app), "cart", "-w", str(tmp_path / "work"), "-q"]) == 0

    assert capsys.readouterr().out.strip() == str(tmp_path / "work" / "shop-cart")


def test_isolate_and_repair_commands(standalone_build, tmp_path):
    out = tmp_path / "isolate"
    entry = ".next/server/app/dashboard/page.js"

    rc = cli.main(["isolate", entry, "--project-root", str(standalone_build.project_root), "-o", str(out), "-q"])
    assert rc == 0
    assert (out / entry).is_file()
    assert not (out / "node_modules" / "next").exists()

    rc = cli.main(["repair", str(out), "--project-root", str(standalone_build.project_root), "-q"])
    assert rc == 0
    assert json.loads((out / "node_modules" / "next" / "package.json").read_text())["main"] == "index.js"


def test_isolate_whole_app(standalone_build, tmp_path):
    out = tmp_path / "whole"

    rc = cli.main(["isolate", "--whole-app", "--project-root", str(standalone_build.project_root), "-o", str(out)])

    assert rc == 0
    assert "process.env.ASSET_PREFIX" in (out / "server.js").read_text()


def test_isolate_requires_entrypoint(standalone_build, tmp_path):
    with pytest.raises(SystemExit):
        cli.main(["isolate", "--project-root", str(standalone_build.project_root), "-o", str(tmp_path / "x")])


def test_fatal_errors_exit_2(standalone_build, tmp_path):
    (standalone_build.project_root / ".next" / "BUILD_ID").unlink()

    rc = cli.main(
        [
            "isolate",
            ".next/server/app/dashboard/page.js",
            "--project-root",
            str(standalone_build.project_root),
            "-o",
            str(tmp_path / "isolate"),
        ]
    )

    assert rc == 2


def test_bad_conventions_exit_2(source_app, tmp_path, write_file):
    conventions = write_file(tmp_path / "c.json", {"unknown": 1})

    assert cli.main(["routes", str(source_app), "--conventions", str(conventions)]) == 2


def test_build_command_exit_code_reflects_failures(source_app, tmp_path, monkeypatch, capsys):
    class Compiler:
        def __init__(self, **kwargs):
            pass

        def compile(self, zone_dir):
            raise cli.IsolationError(f"no toolchain for {zone_dir.name}")

    monkeypatch.setattr(cli, "FrameworkZoneCompiler", Compiler)

    rc = cli.main(["build", str(source_app), "-w", str(tmp_path / "work"), "--route", "cart", "--dry-run", "-q"])

    assert rc == 1
    line = capsys.readouterr().out.strip()
    assert line.startswith("cart\tshop-cart\tfailed\tcompiling:")


def test_build_rejects_bad_env(source_app, tmp_path):
    with pytest.raises(SystemExit):
        cli.main(["build", str(source_app), "-w", str(tmp_path / "w"), "--env", "NOVALUE"])


def test_logging_levels():
    assert cli._configure_logging(verbose=1, quiet=0).level == logging.DEBUG
    assert cli._configure_logging(verbose=0, quiet=1).level == logging.WARNING
    assert cli._configure_logging(verbose=0, quiet=2).level == logging.ERROR
    logger = cli._configure_logging(verbose=0, quiet=0)
    assert logger.level == logging.INFO
    assert logger.propagate is False
    assert len(logger.handlers) == 1
