"""Command line interface for route-isolator."""

import argparse
import logging
import pathlib
import shlex
import sys

from route_isolator.closure import ClosureResult, build_closure
from route_isolator.collaborators import (
    BunExecutableCompiler,
    ContainerPackager,
    FrameworkZoneCompiler,
    KnativeDeployer,
)
from route_isolator.conventions import FrameworkConventions, load_conventions, resolve_conventions
from route_isolator.errors import ConventionsError, IsolationError, StepWarning
from route_isolator.orchestrator import (
    EXECUTABLE_NAME,
    BuildSummary,
    IsolateResult,
    Orchestrator,
    build_application_isolate,
)
from route_isolator.repair import RepairReport, repair
from route_isolator.trace import ClientReferenceResolver
from route_isolator.zone import discover_routes, generate_zone


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the route-isolator logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("route_isolator")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_common_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--app-subdir",
        type=str,
        default=None,
        help="App directory relative to the standalone root (monorepos, e.g. apps/web).",
    )
    p.add_argument(
        "--conventions",
        type=pathlib.Path,
        default=None,
        help="JSON file overriding framework conventions.",
    )
    p.add_argument(
        "--container-root",
        type=str,
        default=None,
        help="Absolute execution root inside the container (default: /app).",
    )
    p.add_argument(
        "--trusted-root",
        type=pathlib.Path,
        default=None,
        help="Directory whose node_modules holds full package copies (default: derived from the build).",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def _add_resolver_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--resolver",
        type=str,
        default=None,
        help=(
            "Command that prints a page's client chunks as a JSON array; the manifest path is appended "
            "(e.g. 'bun scripts/extract-chunks.js'). Client chunks are skipped if omitted."
        ),
    )
    p.add_argument(
        "--asset-prefix",
        type=str,
        default=None,
        help="External asset host to point the isolate's client assets at.",
    )


def _resolve_conventions(ns: argparse.Namespace) -> FrameworkConventions:
    if ns.conventions is not None:
        return load_conventions(ns.conventions, app_subdir=ns.app_subdir, container_root=ns.container_root)
    return resolve_conventions(app_subdir=ns.app_subdir, container_root=ns.container_root)


def _resolver(ns: argparse.Namespace) -> ClientReferenceResolver | None:
    if ns.resolver is None:
        return None
    return ClientReferenceResolver(shlex.split(ns.resolver))


def _report_warnings(logger: logging.Logger, warnings: tuple[StepWarning, ...]) -> None:
    if len(warnings) > 0:
        logger.warning(f"route-isolator: finished with {len(warnings)} warning(s)")


def main(argv: list[str] | None = None) -> int:
    """Run the route-isolator CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code (0 ok, 1 a route failed, 2 fatal error).
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="route-isolator",
        description=(
            "Split a standalone framework build into minimal per-route isolates and deploy each one."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_routes = subparsers.add_parser("routes", help="List the routes of a source application.")
    p_routes.add_argument("app", type=pathlib.Path, help="Application source directory.")
    _add_common_arguments(p_routes)

    p_zone = subparsers.add_parser("zone", help="Generate a single-route copy of a source application.")
    p_zone.add_argument("app", type=pathlib.Path, help="Application source directory.")
    p_zone.add_argument("route", type=str, help="Route to keep ('home' for the root page).")
    p_zone.add_argument("-w", "--work-dir", type=pathlib.Path, required=True, help="Directory zones are generated in.")
    p_zone.add_argument("--app-name", type=str, default=None, help="Zone name prefix (default: source dir name).")
    _add_common_arguments(p_zone)

    p_isolate = subparsers.add_parser("isolate", help="Copy the dependency closure of a compiled entrypoint.")
    p_isolate.add_argument(
        "entrypoint",
        type=pathlib.Path,
        nargs="?",
        default=None,
        help="Compiled entrypoint module (relative to --project-root or absolute).",
    )
    p_isolate.add_argument("--project-root", type=pathlib.Path, required=True, help="Standalone output root.")
    p_isolate.add_argument("-o", "--output", type=pathlib.Path, required=True, help="Isolate directory (recreated).")
    p_isolate.add_argument(
        "--whole-app",
        action="store_true",
        help="Isolate the whole application instead of one entrypoint (includes repair).",
    )
    p_isolate.add_argument("--repair", action="store_true", help="Repair the isolate's dependencies afterwards.")
    _add_resolver_arguments(p_isolate)
    _add_common_arguments(p_isolate)

    p_repair = subparsers.add_parser("repair", help="Repair an isolate's node_modules in place.")
    p_repair.add_argument("isolate", type=pathlib.Path, help="Isolate directory.")
    p_repair.add_argument("--project-root", type=pathlib.Path, required=True, help="Standalone output root.")
    _add_common_arguments(p_repair)

    p_build = subparsers.add_parser("build", help="Build, isolate, package and deploy every route.")
    p_build.add_argument("app", type=pathlib.Path, help="Application source directory.")
    p_build.add_argument("-w", "--work-dir", type=pathlib.Path, required=True, help="Directory zones are generated in.")
    p_build.add_argument(
        "--route",
        dest="routes",
        action="append",
        default=None,
        help="Route to build (repeatable). Defaults to every discovered route.",
    )
    p_build.add_argument("--app-name", type=str, default=None, help="Service name prefix (default: source dir name).")
    p_build.add_argument("--registry", type=str, default=None, help="Container registry to push images to.")
    p_build.add_argument("--tag", type=str, default="latest", help="Image tag (default: latest).")
    p_build.add_argument("--namespace", type=str, default="default", help="Kubernetes namespace.")
    p_build.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment variable of the deployed service (repeatable).",
    )
    p_build.add_argument("--max-workers", type=int, default=3, help="Routes built at once (default: 3).")
    p_build.add_argument(
        "--compile-executable",
        action="store_true",
        help="Compile each isolate's boot script into a bytecode executable before packaging.",
    )
    p_build.add_argument("--dry-run", action="store_true", help="Print docker/kubectl actions instead of running them.")
    _add_resolver_arguments(p_build)
    _add_common_arguments(p_build)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        conventions: FrameworkConventions = _resolve_conventions(ns)

        if ns.command == "routes":
            for route in discover_routes(ns.app, conventions):
                print(route.name)
            return 0

        if ns.command == "zone":
            zone_dir: pathlib.Path = generate_zone(
                source_app_dir=ns.app,
                route_name=ns.route,
                work_dir=ns.work_dir,
                app_name=ns.app_name,
                conventions=conventions,
                logger=logger,
            )
            print(zone_dir)
            return 0

        if ns.command == "isolate":
            if ns.whole_app is True:
                app_result: IsolateResult = build_application_isolate(
                    project_root=ns.project_root,
                    isolate_dir=ns.output,
                    conventions=conventions,
                    trusted_root=ns.trusted_root,
                    logger=logger,
                )
                _report_warnings(logger, app_result.warnings)
                return 0

            if ns.entrypoint is None:
                parser.error("isolate: an entrypoint is required unless --whole-app is given")
            closure: ClosureResult = build_closure(
                entrypoint=ns.entrypoint,
                project_root=ns.project_root,
                isolate_dir=ns.output,
                conventions=conventions,
                resolver=_resolver(ns),
                asset_prefix=ns.asset_prefix,
                logger=logger,
            )
            warnings: tuple[StepWarning, ...] = closure.warnings
            if ns.repair is True:
                report: RepairReport = repair(
                    isolate_dir=ns.output,
                    project_root=ns.project_root,
                    conventions=conventions,
                    trusted_root=ns.trusted_root,
                    logger=logger,
                )
                warnings = warnings + report.warnings
            _report_warnings(logger, warnings)
            return 0

        if ns.command == "repair":
            repaired: RepairReport = repair(
                isolate_dir=ns.isolate,
                project_root=ns.project_root,
                conventions=conventions,
                trusted_root=ns.trusted_root,
                logger=logger,
            )
            _report_warnings(logger, repaired.warnings)
            return 0

        if ns.command == "build":
            env: dict[str, str] = {}
            for item in ns.env:
                key, sep, value = item.partition("=")
                if sep == "" or len(key) == 0:
                    parser.error(f"build: --env expects KEY=VALUE, got {item!r}")
                env[key] = value
            if ns.asset_prefix is not None:
                env.setdefault("ASSET_PREFIX", ns.asset_prefix)

            orchestrator: Orchestrator = Orchestrator(
                conventions=conventions,
                compiler=FrameworkZoneCompiler(conventions=conventions, logger=logger),
                packager=ContainerPackager(
                    registry=ns.registry,
                    tag=ns.tag,
                    executable=EXECUTABLE_NAME if ns.compile_executable is True else None,
                    conventions=conventions,
                    dry_run=ns.dry_run,
                    logger=logger,
                ),
                deployer=KnativeDeployer(namespace=ns.namespace, env=env, dry_run=ns.dry_run, logger=logger),
                max_workers=ns.max_workers,
                resolver=_resolver(ns),
                trusted_root=ns.trusted_root,
                executable_compiler=BunExecutableCompiler(logger=logger) if ns.compile_executable is True else None,
                app_name=ns.app_name,
                asset_prefix=ns.asset_prefix,
                logger=logger,
            )
            summary: BuildSummary = orchestrator.run(ns.app, ns.work_dir, routes=ns.routes)
            for o in summary.outcomes:
                detail: str = (o.artifact or "") if o.ok else f"{o.failed_stage}: {o.error}"
                print(f"{o.route}\t{o.service_name}\t{o.status}\t{detail}")
            return 0 if summary.ok is True else 1
    except (IsolationError, ConventionsError, ValueError) as e:
        logger.error(f"route-isolator: error: {e}")
        return 2

    raise AssertionError(f"Unhandled command: {ns.command}")


if __name__ == "__main__":
    raise SystemExit(main())
