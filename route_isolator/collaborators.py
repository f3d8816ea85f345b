"""External collaborators: the framework compiler, the container builder and the deployer.

Each collaborator is a small protocol with one default adapter that shells
out to the real tool. Tests and embedders pass their own objects instead.
"""

import datetime
import json
import logging
import pathlib
import subprocess
from typing import Any, Protocol

from route_isolator.conventions import FrameworkConventions
from route_isolator.errors import CommandError, NotFoundError


class ZoneCompiler(Protocol):
    def compile(self, zone_dir: pathlib.Path) -> pathlib.Path:
        """Compile a zone and return its standalone output root."""
        ...


class Packager(Protocol):
    def package(self, isolate_dir: pathlib.Path, service_name: str) -> str:
        """Package an isolate and return an artifact reference (e.g. an image tag)."""
        ...


class Deployer(Protocol):
    def deploy(self, service_name: str, artifact: str) -> None:
        """Deploy a packaged artifact as ``service_name``."""
        ...


class ExecutableCompiler(Protocol):
    def compile(self, isolate_dir: pathlib.Path, entrypoint: str, outfile: str) -> pathlib.Path:
        """Compile an isolate's boot script into a single executable."""
        ...


def run_command(
    cmd: list[str],
    *,
    cwd: pathlib.Path | None = None,
    stdin_text: str | None = None,
    logger: logging.Logger | None = None,
) -> str:
    """Run an external tool and return its combined output.

    :param cmd: Command and arguments.
    :param cwd: Optional working directory.
    :param stdin_text: Optional text piped to the tool's stdin.
    :param logger: Optional logger for debug output.
    :returns: Captured stdout followed by stderr.
    :raises CommandError: If the tool cannot be started or exits non-zero.
    """

    if logger is not None and logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"route-isolator: running: {' '.join(cmd)} (cwd={cwd})")

    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            input=stdin_text,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        raise CommandError(f"Cannot run {cmd[0]!r}: {e}") from e

    output: str = (proc.stdout or "") + (proc.stderr or "")
    if proc.returncode != 0:
        tail: str = "\n".join(output.strip().splitlines()[-20:])
        raise CommandError(f"Command failed (exit={proc.returncode}): {' '.join(cmd)}\n{tail}")
    return output


class FrameworkZoneCompiler:
    """Compile a zone with the framework's production build.

    :ivar command: Build command run inside the zone.
    :ivar conventions: Framework conventions used to locate the standalone output.
    """

    def __init__(
        self,
        *,
        command: tuple[str, ...] = ("bun", "run", "build"),
        conventions: FrameworkConventions | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.command: tuple[str, ...] = command
        self.conventions: FrameworkConventions = conventions or FrameworkConventions()
        self.logger: logging.Logger = logger or logging.getLogger("route_isolator")

    def compile(self, zone_dir: pathlib.Path) -> pathlib.Path:
        self.logger.info(f"route-isolator: compiling zone {zone_dir.name}")
        run_command(list(self.command), cwd=zone_dir, logger=self.logger)

        project_root: pathlib.Path = zone_dir / self.conventions.dist_dir / self.conventions.standalone_dir
        if project_root.is_dir() is False:
            raise NotFoundError(
                f"Build of {zone_dir} produced no standalone output at {project_root} "
                "(is output: 'standalone' configured?)"
            )
        return project_root


class BunExecutableCompiler:
    """Compile an isolate's boot script into a bytecode executable with bun."""

    def __init__(
        self,
        *,
        bun: str = "bun",
        target: str | None = "bun-linux-x64",
        logger: logging.Logger | None = None,
    ) -> None:
        self.bun: str = bun
        self.target: str | None = target
        self.logger: logging.Logger = logger or logging.getLogger("route_isolator")

    def command_for(self, entrypoint: str, outfile: str) -> list[str]:
        cmd: list[str] = [
            self.bun,
            "build",
            "--compile",
            "--bytecode",
            "--minify",
            "--sourcemap=none",
        ]
        if self.target is not None:
            cmd.append(f"--target={self.target}")
        cmd.extend(["--external:*", entrypoint, "--outfile", outfile])
        return cmd

    def compile(self, isolate_dir: pathlib.Path, entrypoint: str, outfile: str) -> pathlib.Path:
        self.logger.info(f"route-isolator: compiling {entrypoint} -> {outfile}")
        run_command(self.command_for(entrypoint, outfile), cwd=isolate_dir, logger=self.logger)
        out: pathlib.Path = isolate_dir / outfile
        if out.is_file() is False:
            raise NotFoundError(f"Executable compiler produced no output at {out}")
        return out


def render_dockerfile(
    *,
    base_image: str,
    command: list[str],
    port: int,
) -> str:
    """Render the Dockerfile of an isolate.

    :param base_image: Runtime base image.
    :param command: Container command.
    :param port: Port the server listens on.
    :returns: Dockerfile text.
    """

    return (
        f"FROM {base_image}\n"
        "WORKDIR /app\n"
        "COPY . .\n"
        "ENV NODE_ENV=production\n"
        f"ENV PORT={port}\n"
        'ENV HOSTNAME="0.0.0.0"\n'
        f"EXPOSE {port}\n"
        f"CMD {json.dumps(command)}\n"
    )


def image_reference(service_name: str, *, registry: str | None, tag: str) -> str:
    """Return the image reference of a service."""

    if registry:
        return f"{registry.rstrip('/')}/{service_name}:{tag}"
    return f"{service_name}:{tag}"


class ContainerPackager:
    """Package an isolate as a container image with docker.

    The Dockerfile is always written; ``dry_run`` skips build and push. With
    ``executable`` set the container runs that compiled file instead of the
    boot script.
    """

    def __init__(
        self,
        *,
        registry: str | None = None,
        tag: str = "latest",
        base_image: str = "oven/bun:alpine",
        runner: str = "bun",
        executable: str | None = None,
        platform: str = "linux/amd64",
        port: int = 3000,
        conventions: FrameworkConventions | None = None,
        dry_run: bool = False,
        docker: str = "docker",
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry: str | None = registry
        self.tag: str = tag
        self.base_image: str = base_image
        self.runner: str = runner
        self.executable: str | None = executable
        self.platform: str = platform
        self.port: int = port
        self.conventions: FrameworkConventions = conventions or FrameworkConventions()
        self.dry_run: bool = dry_run
        self.docker: str = docker
        self.logger: logging.Logger = logger or logging.getLogger("route_isolator")

    def _command(self) -> list[str]:
        if self.executable is not None:
            return [f"./{self.executable}"]
        return [self.runner, self.conventions.boot_script_relpath()]

    def package(self, isolate_dir: pathlib.Path, service_name: str) -> str:
        image: str = image_reference(service_name, registry=self.registry, tag=self.tag)
        dockerfile: str = render_dockerfile(
            base_image=self.base_image,
            command=self._command(),
            port=self.port,
        )
        (isolate_dir / "Dockerfile").write_text(dockerfile, encoding="utf-8")

        build_cmd: list[str] = [self.docker, "build", "--platform", self.platform, "-t", image, "."]
        push_cmd: list[str] = [self.docker, "push", image]
        if self.dry_run is True:
            self.logger.info(f"route-isolator: [dry-run] {' '.join(build_cmd)}")
            self.logger.info(f"route-isolator: [dry-run] {' '.join(push_cmd)}")
            return image

        self.logger.info(f"route-isolator: building image {image}")
        run_command(build_cmd, cwd=isolate_dir, logger=self.logger)
        run_command(push_cmd, logger=self.logger)
        return image


class KnativeDeployer:
    """Deploy an image as a Knative Service through ``kubectl apply``."""

    def __init__(
        self,
        *,
        namespace: str = "default",
        env: dict[str, str] | None = None,
        min_scale: int = 0,
        dry_run: bool = False,
        kubectl: str = "kubectl",
        logger: logging.Logger | None = None,
    ) -> None:
        self.namespace: str = namespace
        self.env: dict[str, str] = dict(env or {})
        self.min_scale: int = min_scale
        self.dry_run: bool = dry_run
        self.kubectl: str = kubectl
        self.logger: logging.Logger = logger or logging.getLogger("route_isolator")

    def render_service(self, service_name: str, image: str, *, deployed_at: str | None = None) -> dict[str, Any]:
        """Render the Service manifest.

        The deployment timestamp annotation forces a new revision on every deploy.
        """

        if deployed_at is None:
            deployed_at = datetime.datetime.now(datetime.timezone.utc).isoformat()
        container: dict[str, Any] = {"image": image}
        if len(self.env) > 0:
            container["env"] = [{"name": k, "value": v} for k, v in sorted(self.env.items())]
        return {
            "apiVersion": "serving.knative.dev/v1",
            "kind": "Service",
            "metadata": {"name": service_name, "namespace": self.namespace},
            "spec": {
                "template": {
                    "metadata": {
                        "annotations": {
                            "autoscaling.knative.dev/min-scale": str(self.min_scale),
                            "route-isolator/deployed-at": deployed_at,
                        }
                    },
                    "spec": {"containers": [container]},
                }
            },
        }

    def deploy(self, service_name: str, artifact: str) -> None:
        manifest: str = json.dumps(self.render_service(service_name, artifact), indent=2)
        if self.dry_run is True:
            self.logger.info(f"route-isolator: [dry-run] {self.kubectl} apply -f -\n{manifest}")
            return
        self.logger.info(f"route-isolator: deploying service {service_name} ({artifact})")
        run_command([self.kubectl, "apply", "-f", "-"], stdin_text=manifest, logger=self.logger)
