from __future__ import annotations

from docker.errors import APIError

from . import db
from .docker_ops import COMPOSE_PROJECT_LABEL, ContainerRef, DockerRuntime
from .namespace import ResourcePlan
from .networks import TopologyManager
from .runtime import HARD_FAIL, OK, SOFT_FAIL, StepResult
from .stack import compose_projects


class TeardownEngine:
    """Stops and removes one namespace's containers, volumes and networks.

    Order: stop -> disconnect networks -> remove containers -> remove volumes
    -> remove networks. Only volume removal is irreversible and it needs an
    explicit ``confirm_destructive``.

    Resources are selected by exact identity: containers by their compose
    project label, volumes by their compose project prefix, networks by the
    plan's own names. The project-wide shared network is never removed.
    """

    def __init__(self, runtime: DockerRuntime, plan: ResourcePlan):
        self.runtime = runtime
        self.plan = plan
        self.namespace = plan.namespace
        self.projects = compose_projects(plan)
        self.topology = TopologyManager(runtime)

    def _containers(self) -> list[ContainerRef]:
        out: list[ContainerRef] = []
        for project in self.projects:
            out += self.runtime.list_containers(labels={COMPOSE_PROJECT_LABEL: project})
        return out

    def _volumes(self) -> list[str]:
        prefixes = tuple(f"{p}_" for p in self.projects)
        return [v for v in self.runtime.list_volumes(name_contains=self.namespace) if v.startswith(prefixes)]

    def _networks(self) -> list[str]:
        names = self.plan.network_names
        return [n for n in (names.frontend, names.backend) if self.runtime.get_network(n) is not None]

    def stop(self) -> list[StepResult]:
        results = []
        for c in self._containers():
            if not c.running:
                continue
            try:
                self.runtime.stop(c.name)
                results.append(StepResult("stop", OK, c.name))
            except APIError as e:
                results.append(StepResult("stop", SOFT_FAIL, f"{c.name}: {e}"))
        db.log_event("INFO", f"Stopped {sum(r.ok for r in results)} container(s).", namespace=self.namespace)
        return results

    def disconnect_networks(self) -> list[StepResult]:
        """Detach namespace containers from every network they are on.

        Includes networks outside the namespace (the project's shared network),
        so those can outlive this namespace cleanly.
        """
        results = []
        containers = {c.name for c in self._containers()}
        for net in self.runtime.list_networks():
            if net.name in ("bridge", "host", "none"):
                continue
            try:
                attached = self.runtime.network_containers(net.name)
            except APIError:
                continue
            for name in attached:
                if name not in containers:
                    continue
                try:
                    self.topology.detach(name, net.name)
                    results.append(StepResult("disconnect", OK, f"{name} from {net.name}"))
                except APIError as e:
                    results.append(StepResult("disconnect", SOFT_FAIL, f"{name} from {net.name}: {e}"))
        return results

    def remove_containers(self) -> list[StepResult]:
        results = []
        for c in self._containers():
            try:
                self.runtime.remove_container(c.name, force=True)
                results.append(StepResult("remove_container", OK, c.name))
            except APIError as e:
                results.append(StepResult("remove_container", SOFT_FAIL, f"{c.name}: {e}"))
        db.log_event("INFO", f"Removed {sum(r.ok for r in results)} container(s).", namespace=self.namespace)
        return results

    def remove_volumes(self, confirm_destructive: bool = False) -> list[StepResult]:
        volumes = self._volumes()
        if not volumes:
            return []
        if not confirm_destructive:
            msg = f"Kept {len(volumes)} volume(s); volume removal needs explicit confirmation."
            db.log_event("WARN", msg, namespace=self.namespace)
            return [StepResult("remove_volumes", SOFT_FAIL, msg)]
        results = []
        for v in volumes:
            try:
                self.runtime.remove_volume(v)
                results.append(StepResult("remove_volume", OK, v))
            except APIError as e:
                # Still referenced by a container outside this namespace.
                results.append(StepResult("remove_volume", SOFT_FAIL, f"{v}: {e}"))
        db.log_event("WARN", f"Removed {sum(r.ok for r in results)} volume(s).", namespace=self.namespace)
        return results

    def remove_networks(self) -> list[StepResult]:
        results = []
        for name in self._networks():
            try:
                self.runtime.remove_network(name)
                results.append(StepResult("remove_network", OK, name))
            except APIError as e:
                msg = f"{name} still in use; skipped ({e})"
                db.log_event("WARN", msg, namespace=self.namespace)
                results.append(StepResult("remove_network", SOFT_FAIL, msg))
        return results

    def reset(self, confirm_destructive: bool = False) -> list[StepResult]:
        results: list[StepResult] = []
        results += self.stop()
        results += self.disconnect_networks()
        results += self.remove_containers()
        results += self.remove_volumes(confirm_destructive=confirm_destructive)
        results += self.remove_networks()
        leftover = self._containers()
        if leftover:
            results.append(StepResult("verify", HARD_FAIL, f"containers remain: {', '.join(c.name for c in leftover)}"))
        return results
