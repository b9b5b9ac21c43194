from __future__ import annotations

import os
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Any

import docker
from docker.errors import APIError, DockerException, NotFound

from .settings import settings


COMPOSE_PROJECT_LABEL = "com.docker.compose.project"

UNIT_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


class RuntimeUnavailable(RuntimeError):
    pass


class ComposeError(RuntimeError):
    def __init__(self, unit: str, output: str):
        super().__init__(f"docker compose failed for unit '{unit}'")
        self.unit = unit
        self.output = output


def validate_unit_name(name: str) -> None:
    if not UNIT_NAME_RE.match(name):
        raise ValueError(
            "Invalid compose unit name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    status: str = "unknown"
    labels: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def running(self) -> bool:
        return self.status == "running"


@dataclass(frozen=True)
class NetworkRef:
    id: str
    name: str


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ComposeUnit:
    """One docker-compose directory started as its own compose project."""

    name: str
    directory: str
    project: str
    env: dict[str, str] = field(default_factory=dict, compare=False)

    def container_name(self, service: str, index: int = 1) -> str:
        return f"{self.project}-{service}-{index}"


def is_conflict(exc: Exception) -> bool:
    """True for Docker API errors that mean "the resource is already in that state"."""
    if isinstance(exc, APIError) and getattr(exc, "status_code", None) == 409:
        return True
    text = str(exc).lower()
    return "already exists" in text or "already attached" in text or "endpoint with name" in text


class DockerRuntime:
    """Narrow container-runtime surface the reconciler depends on.

    Containers, networks and volumes go through the Docker SDK. Compose units
    are started through the Compose CLI so overrides and .env files behave
    exactly as they do for an operator running ``docker compose up -d``.
    """

    def __init__(self, compose_binary: str | None = None):
        self.compose_binary = compose_binary or settings.compose_binary
        self._docker: docker.DockerClient | None = None

    def _client(self) -> docker.DockerClient:
        if self._docker is None:
            try:
                self._docker = docker.from_env()
                self._docker.ping()
            except DockerException as exc:
                self._docker = None
                raise RuntimeUnavailable(
                    "Docker is not available. Start Docker Desktop / docker daemon and try again."
                ) from exc
        return self._docker

    # --- containers -------------------------------------------------------

    def list_containers(self, name_contains: str | None = None, labels: dict[str, str] | None = None) -> list[ContainerRef]:
        filters: dict[str, Any] = {}
        if labels:
            filters["label"] = [f"{k}={v}" for k, v in labels.items()]
        if name_contains:
            filters["name"] = name_contains
        containers = self._client().containers.list(all=True, filters=filters)
        refs = [ContainerRef(id=c.id, name=c.name, status=c.status, labels=dict(c.labels or {})) for c in containers]
        # The daemon's name filter is a regex match; re-check as a plain substring.
        if name_contains:
            refs = [r for r in refs if name_contains in r.name]
        return refs

    def get_container(self, name_or_id: str) -> ContainerRef | None:
        try:
            c = self._client().containers.get(name_or_id)
        except NotFound:
            return None
        return ContainerRef(id=c.id, name=c.name, status=c.status, labels=dict(c.labels or {}))

    def run(self, unit: ComposeUnit) -> list[ContainerRef]:
        """``docker compose up -d`` for one unit; returns the unit's containers."""
        validate_unit_name(unit.name)
        if not os.path.isdir(unit.directory):
            raise FileNotFoundError(f"Compose directory '{unit.directory}' does not exist.")
        if not any(os.path.isfile(os.path.join(unit.directory, f)) for f in ("docker-compose.yml", "docker-compose.yaml")):
            raise FileNotFoundError(f"No docker-compose.yml or docker-compose.yaml found in '{unit.directory}'.")

        cmd = shlex.split(self.compose_binary)
        if shutil.which(cmd[0]) is None:
            raise RuntimeUnavailable(f"Compose binary '{cmd[0]}' not found. Install Docker Compose v2 or set TSR_COMPOSE_BINARY.")

        env = dict(os.environ)
        env.update(unit.env)
        proc = subprocess.run(
            [*cmd, "-p", unit.project, "up", "-d"],
            cwd=unit.directory,
            env=env,
            capture_output=True,
            text=True,
        )
        if proc.returncode != 0:
            raise ComposeError(unit.name, (proc.stdout or "") + (proc.stderr or ""))
        return self.list_containers(labels={COMPOSE_PROJECT_LABEL: unit.project})

    def exec(self, container: str, cmd: list[str] | str, user: str | None = None) -> ExecResult:
        c = self._client().containers.get(container)
        kwargs: dict[str, Any] = {}
        if user is not None:
            kwargs["user"] = user
        res = c.exec_run(cmd, **kwargs)
        output = res.output.decode("utf-8", errors="replace") if isinstance(res.output, bytes) else str(res.output or "")
        return ExecResult(exit_code=int(res.exit_code or 0), output=output)

    def restart(self, container: str) -> None:
        self._client().containers.get(container).restart()

    def stop(self, container: str) -> None:
        try:
            self._client().containers.get(container).stop()
        except NotFound:
            return

    def remove_container(self, container: str, force: bool = True) -> None:
        try:
            self._client().containers.get(container).remove(force=force)
        except NotFound:
            return

    # --- networks ---------------------------------------------------------

    def get_network(self, name: str) -> NetworkRef | None:
        try:
            n = self._client().networks.get(name)
        except NotFound:
            return None
        return NetworkRef(id=n.id, name=n.name)

    def list_networks(self, name_contains: str | None = None) -> list[NetworkRef]:
        filters = {"name": name_contains} if name_contains else None
        refs = [NetworkRef(id=n.id, name=n.name) for n in self._client().networks.list(filters=filters)]
        if name_contains:
            refs = [r for r in refs if name_contains in r.name]
        return refs

    def create_network(self, name: str, internal: bool = False) -> NetworkRef:
        n = self._client().networks.create(name, driver="bridge", internal=internal)
        return NetworkRef(id=n.id, name=n.name)

    def network_containers(self, name: str) -> list[str]:
        n = self._client().networks.get(name)
        n.reload()
        return [c.name for c in n.containers]

    def connect_network(self, container: str, network: str) -> None:
        self._client().networks.get(network).connect(container)

    def disconnect_network(self, container: str, network: str) -> None:
        self._client().networks.get(network).disconnect(container)

    def remove_network(self, name: str) -> None:
        try:
            self._client().networks.get(name).remove()
        except NotFound:
            return

    # --- volumes ----------------------------------------------------------

    def list_volumes(self, name_contains: str | None = None) -> list[str]:
        filters = {"name": name_contains} if name_contains else None
        names = [v.name for v in self._client().volumes.list(filters=filters)]
        if name_contains:
            names = [n for n in names if name_contains in n]
        return names

    def remove_volume(self, name: str) -> None:
        try:
            self._client().volumes.get(name).remove()
        except NotFound:
            return
