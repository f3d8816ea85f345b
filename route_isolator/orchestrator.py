"""Build orchestration.

Each route runs a private pipeline: generate a zone, compile it, isolate the
compiled entrypoint, repair the isolate's dependencies, package it and deploy
it. Pipelines run concurrently on a fixed-size worker pool; one route failing
never stops the others, and :meth:`Orchestrator.run` returns only after every
dispatched route has finished.
"""

from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
import logging
import os
import pathlib
import threading
import time
from typing import Callable

from route_isolator.closure import ClosureResult, build_closure
from route_isolator.collaborators import Deployer, ExecutableCompiler, Packager, ZoneCompiler
from route_isolator.conventions import FrameworkConventions
from route_isolator.errors import (
    CLIENT_ASSETS,
    PATH_REWRITE,
    IsolationError,
    NotFoundError,
    StepWarning,
    record_warning,
)
from route_isolator.fsutil import CopyStats, copy_tree_all, reset_dir, write_text
from route_isolator.paths import derive_build_source_root, inject_asset_prefix_override, rewrite_absolute_paths
from route_isolator.repair import RepairReport, repair
from route_isolator.zone import colliding_routes, discover_routes, generate_zone, service_name_for, zone_name_for

STAGE_DISCOVERED: str = "discovered"
STAGE_GENERATING: str = "generating"
STAGE_COMPILING: str = "compiling"
STAGE_ISOLATING: str = "isolating"
STAGE_REPAIRING: str = "repairing"
STAGE_PACKAGING: str = "packaging"
STAGE_CANCELLED: str = "cancelled"

STATUS_DEPLOYED: str = "deployed"
STATUS_FAILED: str = "failed"

EXECUTABLE_NAME: str = "server"


class CancellationToken:
    """Cooperative cancellation flag checked between pipeline stages."""

    def __init__(self) -> None:
        self._event: threading.Event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class RouteCancelled(IsolationError):
    """Raised inside a pipeline when its cancellation token is set."""


@dataclass(frozen=True, slots=True)
class IsolateResult:
    """A repaired isolate.

    :ivar isolate_dir: Isolate directory.
    :ivar files_copied: Number of files copied into the isolate before repair.
    :ivar warnings: Recoverable problems from every step (isolation and repair).
    :ivar repair: Repair report.
    """

    isolate_dir: pathlib.Path
    files_copied: int
    warnings: tuple[StepWarning, ...]
    repair: RepairReport


@dataclass(frozen=True, slots=True)
class RouteOutcome:
    """Terminal state of one route's pipeline.

    :ivar route: Route name.
    :ivar service_name: Deployable service name.
    :ivar status: ``deployed`` or ``failed``.
    :ivar failed_stage: Stage that failed (``None`` if deployed).
    :ivar error: Error message (``None`` if deployed).
    :ivar warnings: Recoverable problems.
    :ivar isolate_dir: Isolate directory, if one was produced.
    :ivar artifact: Packaged artifact reference, if packaging succeeded.
    """

    route: str
    service_name: str
    status: str
    failed_stage: str | None = None
    error: str | None = None
    warnings: tuple[StepWarning, ...] = ()
    isolate_dir: pathlib.Path | None = None
    artifact: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_DEPLOYED


@dataclass(frozen=True, slots=True)
class BuildSummary:
    """Outcomes of every dispatched route, in dispatch order."""

    outcomes: tuple[RouteOutcome, ...]

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def failed(self) -> tuple[RouteOutcome, ...]:
        return tuple(o for o in self.outcomes if o.ok is False)


class _Pipeline:
    """Mutable per-route state; owned by exactly one worker."""

    def __init__(self, route: str, service_name: str, cancel: CancellationToken | None) -> None:
        self.route: str = route
        self.service_name: str = service_name
        self.cancel: CancellationToken | None = cancel
        self.stage: str = STAGE_DISCOVERED
        self.warnings: list[StepWarning] = []
        self.isolate_dir: pathlib.Path | None = None
        self.artifact: str | None = None

    def enter(self, stage: str, logger: logging.Logger) -> None:
        if self.cancel is not None and self.cancel.cancelled is True:
            self.stage = STAGE_CANCELLED
            raise RouteCancelled(f"cancelled before {stage}")
        self.stage = stage
        logger.info(f"route-isolator: [{self.route}] {stage}")


class Orchestrator:
    """Run the per-route build pipeline over a pool of workers.

    :ivar conventions: Framework conventions.
    :ivar compiler: Zone compiler.
    :ivar packager: Isolate packager.
    :ivar deployer: Artifact deployer.
    :ivar max_workers: Maximum number of routes built at once.
    :ivar resolver: Optional client-reference resolver.
    :ivar trusted_root: Optional trusted dependency root for repair.
    :ivar executable_compiler: Optional compiler turning the boot script into an executable before packaging.
    :ivar app_name: Service name prefix (defaults to the source directory name).
    :ivar asset_prefix: Optional external asset host baked into every isolate.
    """

    def __init__(
        self,
        *,
        compiler: ZoneCompiler,
        packager: Packager,
        deployer: Deployer,
        conventions: FrameworkConventions | None = None,
        max_workers: int = 3,
        resolver: Callable[[pathlib.Path], list[str]] | None = None,
        trusted_root: pathlib.Path | None = None,
        executable_compiler: ExecutableCompiler | None = None,
        app_name: str | None = None,
        asset_prefix: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.conventions: FrameworkConventions = conventions or FrameworkConventions()
        self.compiler: ZoneCompiler = compiler
        self.packager: Packager = packager
        self.deployer: Deployer = deployer
        self.max_workers: int = max_workers
        self.resolver: Callable[[pathlib.Path], list[str]] | None = resolver
        self.trusted_root: pathlib.Path | None = trusted_root
        self.executable_compiler: ExecutableCompiler | None = executable_compiler
        self.app_name: str | None = app_name
        self.asset_prefix: str | None = asset_prefix
        self.logger: logging.Logger = logger or logging.getLogger("route_isolator")

    def run(
        self,
        source_app_dir: pathlib.Path,
        work_dir: pathlib.Path,
        routes: list[str] | None = None,
        cancel: CancellationToken | None = None,
    ) -> BuildSummary:
        """Build and deploy every route.

        :param source_app_dir: Application source directory.
        :param work_dir: Directory zones are generated in.
        :param routes: Routes to build (discovered from the source if omitted).
        :param cancel: Optional cancellation token, checked before each stage.
        :returns: Summary with one outcome per route, in route order.
        :raises NotFoundError: If routes must be discovered and the app has no route directory.
        """

        if routes is None:
            routes = [r.name for r in discover_routes(source_app_dir, self.conventions)]
        routes = list(dict.fromkeys(routes))
        app_name: str = self.app_name or pathlib.Path(os.path.abspath(source_app_dir)).name
        collisions: set[str] = colliding_routes(app_name, routes)
        for route in sorted(collisions):
            self.logger.warning(
                f"route-isolator: [{route}] shares its service name with another route; "
                f"using {service_name_for(app_name, route, disambiguate=True)}"
            )

        t0: float = time.perf_counter()
        self.logger.info(
            f"route-isolator: building {len(routes)} route(s) with {self.max_workers} worker(s): {', '.join(routes)}"
        )
        work_dir.mkdir(parents=True, exist_ok=True)

        outcomes: dict[str, RouteOutcome] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="RouteWorker") as executor:
            tasks: dict[Future[RouteOutcome], str] = {}
            for route in routes:
                tasks[
                    executor.submit(
                        self.process_route,
                        source_app_dir=source_app_dir,
                        work_dir=work_dir,
                        route_name=route,
                        app_name=app_name,
                        cancel=cancel,
                        disambiguate=route in collisions,
                    )
                ] = route

            for future in as_completed(tasks):
                outcome: RouteOutcome = future.result()
                outcomes[tasks[future]] = outcome

        summary: BuildSummary = BuildSummary(outcomes=tuple(outcomes[r] for r in routes))
        t1: float = time.perf_counter()
        deployed: int = len(summary.outcomes) - len(summary.failed)
        self.logger.info(
            f"route-isolator: {deployed} deployed, {len(summary.failed)} failed in {t1 - t0:.2f}s"
        )
        for o in summary.failed:
            self.logger.error(f"route-isolator: [{o.route}] failed at {o.failed_stage}: {o.error}")
        return summary

    def process_route(
        self,
        *,
        source_app_dir: pathlib.Path,
        work_dir: pathlib.Path,
        route_name: str,
        app_name: str,
        cancel: CancellationToken | None = None,
        disambiguate: bool = False,
    ) -> RouteOutcome:
        """Run one route's pipeline to a terminal state.

        Never raises: any exception becomes a ``failed`` outcome naming the stage.
        With ``disambiguate`` the zone and service names carry a route hash.
        """

        p: _Pipeline = _Pipeline(
            route_name, service_name_for(app_name, route_name, disambiguate=disambiguate), cancel
        )
        try:
            p.enter(STAGE_GENERATING, self.logger)
            zone_dir: pathlib.Path = generate_zone(
                source_app_dir=source_app_dir,
                route_name=route_name,
                work_dir=work_dir,
                app_name=app_name,
                conventions=self.conventions,
                zone_name=zone_name_for(app_name, route_name, disambiguate=disambiguate),
                logger=self.logger,
            )

            p.enter(STAGE_COMPILING, self.logger)
            project_root: pathlib.Path = self.compiler.compile(zone_dir)

            p.enter(STAGE_ISOLATING, self.logger)
            p.isolate_dir = zone_dir / self.conventions.isolate_dir_name
            closure: ClosureResult = build_closure(
                entrypoint=project_root / self.conventions.page_entry_relpath(route_name),
                project_root=project_root,
                isolate_dir=p.isolate_dir,
                conventions=self.conventions,
                resolver=self.resolver,
                asset_prefix=self.asset_prefix,
                logger=self.logger,
            )
            p.warnings.extend(closure.warnings)

            p.enter(STAGE_REPAIRING, self.logger)
            report: RepairReport = repair(
                isolate_dir=p.isolate_dir,
                project_root=project_root,
                conventions=self.conventions,
                trusted_root=self.trusted_root,
                logger=self.logger,
            )
            p.warnings.extend(report.warnings)

            p.enter(STAGE_PACKAGING, self.logger)
            if self.executable_compiler is not None:
                self.executable_compiler.compile(p.isolate_dir, self.conventions.boot_script_relpath(), EXECUTABLE_NAME)
            p.artifact = self.packager.package(p.isolate_dir, p.service_name)
            self.deployer.deploy(p.service_name, p.artifact)
        except Exception as e:  # noqa: BLE001
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"route-isolator: [{route_name}] traceback", exc_info=True)
            return RouteOutcome(
                route=route_name,
                service_name=p.service_name,
                status=STATUS_FAILED,
                failed_stage=p.stage,
                error=f"{type(e).__name__}: {e}",
                warnings=tuple(p.warnings),
                isolate_dir=p.isolate_dir,
                artifact=p.artifact,
            )

        self.logger.info(f"route-isolator: [{route_name}] deployed {p.service_name} ({p.artifact})")
        return RouteOutcome(
            route=route_name,
            service_name=p.service_name,
            status=STATUS_DEPLOYED,
            warnings=tuple(p.warnings),
            isolate_dir=p.isolate_dir,
            artifact=p.artifact,
        )

    def isolate_route(self, *, project_root: pathlib.Path, route_name: str, isolate_dir: pathlib.Path) -> IsolateResult:
        """Isolate and repair one route of an already compiled build."""

        return isolate_route(
            project_root=project_root,
            route_name=route_name,
            isolate_dir=isolate_dir,
            conventions=self.conventions,
            resolver=self.resolver,
            trusted_root=self.trusted_root,
            asset_prefix=self.asset_prefix,
            logger=self.logger,
        )


def isolate_route(
    *,
    project_root: pathlib.Path,
    route_name: str,
    isolate_dir: pathlib.Path,
    conventions: FrameworkConventions | None = None,
    resolver: Callable[[pathlib.Path], list[str]] | None = None,
    trusted_root: pathlib.Path | None = None,
    asset_prefix: str | None = None,
    logger: logging.Logger | None = None,
) -> IsolateResult:
    """Build the closure of one compiled route and repair it.

    :param project_root: Standalone output root.
    :param route_name: Route name (the root sentinel for the root page).
    :param isolate_dir: Isolate directory (recreated).
    :param conventions: Framework conventions (defaults apply if omitted).
    :param resolver: Optional client-reference resolver.
    :param trusted_root: Optional trusted dependency root.
    :param asset_prefix: Optional external asset host.
    :param logger: Optional logger.
    :returns: Isolate result.
    """

    if conventions is None:
        conventions = FrameworkConventions()
    closure: ClosureResult = build_closure(
        entrypoint=project_root / conventions.page_entry_relpath(route_name),
        project_root=project_root,
        isolate_dir=isolate_dir,
        conventions=conventions,
        resolver=resolver,
        asset_prefix=asset_prefix,
        logger=logger,
    )
    report: RepairReport = repair(
        isolate_dir=isolate_dir,
        project_root=project_root,
        conventions=conventions,
        trusted_root=trusted_root,
        logger=logger,
    )
    return IsolateResult(
        isolate_dir=isolate_dir,
        files_copied=len(closure.copied),
        warnings=closure.warnings + report.warnings,
        repair=report,
    )


def build_application_isolate(
    *,
    project_root: pathlib.Path,
    isolate_dir: pathlib.Path,
    conventions: FrameworkConventions | None = None,
    trusted_root: pathlib.Path | None = None,
    logger: logging.Logger | None = None,
) -> IsolateResult:
    """Isolate a whole application instead of a single route.

    The standalone tree is copied whole together with the build's static
    assets; the boot script gains a runtime ``ASSET_PREFIX`` override, build
    paths are rewritten and the dependency tree is repaired.

    :param project_root: Standalone output root.
    :param isolate_dir: Isolate directory (recreated).
    :param conventions: Framework conventions (defaults apply if omitted).
    :param trusted_root: Optional trusted dependency root.
    :param logger: Optional logger.
    :returns: Isolate result.
    :raises NotFoundError: If the standalone root or its boot script is missing.
    :raises IsolationError: If ``isolate_dir`` would overwrite the standalone root.
    """

    if logger is None:
        logger = logging.getLogger("route_isolator")
    if conventions is None:
        conventions = FrameworkConventions()
    if project_root.is_dir() is False:
        raise NotFoundError(f"Standalone output root does not exist: {project_root}")

    root_abs: pathlib.Path = pathlib.Path(os.path.abspath(project_root))
    iso_abs: pathlib.Path = pathlib.Path(os.path.abspath(isolate_dir))
    if root_abs == iso_abs or root_abs.is_relative_to(iso_abs) is True or iso_abs.is_relative_to(root_abs) is True:
        raise IsolationError(f"Isolate directory {isolate_dir} overlaps the build output {project_root}")

    boot_rel: str = conventions.boot_script_relpath()
    if (root_abs / boot_rel).is_file() is False:
        raise NotFoundError(f"Boot script missing from {project_root}: {boot_rel}")

    warnings: list[StepWarning] = []
    logger.info(f"route-isolator: isolating whole application {project_root} -> {isolate_dir}")
    reset_dir(isolate_dir)
    stats: CopyStats = copy_tree_all(src=root_abs, dst=isolate_dir)
    files_copied: int = stats.files_copied

    static_src: pathlib.Path = root_abs.parent / "static"
    if static_src.is_dir() is True:
        files_copied += copy_tree_all(src=static_src, dst=isolate_dir / conventions.dist_relpath("static")).files_copied
    else:
        record_warning(
            warnings, kind=CLIENT_ASSETS, subject=str(static_src), message="no static assets found", logger=logger
        )

    boot: pathlib.Path = isolate_dir / boot_rel
    patched: str | None = inject_asset_prefix_override(
        boot.read_text(encoding="utf-8"), conventions.standalone_config_marker
    )
    if patched is not None:
        write_text(boot, patched)
        logger.info(f"route-isolator: injected ASSET_PREFIX override into {boot_rel}")
    elif conventions.standalone_config_marker not in boot.read_text(encoding="utf-8"):
        record_warning(
            warnings,
            kind=PATH_REWRITE,
            subject=boot_rel,
            message="standalone config assignment not found; ASSET_PREFIX override not injected",
            logger=logger,
        )

    boot_files: list[str] = [
        r for r in (conventions.boot_manifest_relpath(), boot_rel) if (isolate_dir / r).is_file() is True
    ]
    warnings.extend(
        rewrite_absolute_paths(
            isolate_dir=isolate_dir,
            build_source_root=derive_build_source_root(root_abs, conventions),
            container_root=conventions.container_root,
            relpaths=boot_files,
            logger=logger,
        )
    )

    report: RepairReport = repair(
        isolate_dir=isolate_dir,
        project_root=root_abs,
        conventions=conventions,
        trusted_root=trusted_root,
        logger=logger,
    )
    return IsolateResult(
        isolate_dir=isolate_dir,
        files_copied=files_copied,
        warnings=tuple(warnings) + report.warnings,
        repair=report,
    )
