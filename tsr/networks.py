from __future__ import annotations

from dataclasses import dataclass

from docker.errors import APIError, NotFound

from . import db
from .docker_ops import DockerRuntime, is_conflict
from .namespace import ResourcePlan
from .runtime import RunState


@dataclass(frozen=True)
class NetworkHandle:
    id: str
    name: str
    created: bool
    internal: bool = False


class TopologyManager:
    """Keeps the three network tiers of a namespace in place.

    - frontend: per (project, environment); the proxy and every routed service
    - shared: per project, crossing environments, for intentionally shared backends
    - backend: internal-only, for tightly coupled components with no external route
    """

    def __init__(self, runtime: DockerRuntime, state: RunState | None = None):
        self.runtime = runtime
        self.state = state

    def ensure_network(self, name: str, internal: bool = False) -> NetworkHandle:
        existing = self.runtime.get_network(name)
        if existing is not None:
            handle = NetworkHandle(id=existing.id, name=existing.name, created=False, internal=internal)
        else:
            try:
                ref = self.runtime.create_network(name, internal=internal)
                handle = NetworkHandle(id=ref.id, name=ref.name, created=True, internal=internal)
                db.log_event("INFO", f"Created docker network '{name}'.", namespace=self._ns())
            except APIError as exc:
                # Lost a race with another creator: adopt whatever is there now.
                if not is_conflict(exc):
                    raise
                ref = self.runtime.get_network(name)
                if ref is None:
                    raise
                handle = NetworkHandle(id=ref.id, name=ref.name, created=False, internal=internal)
        if self.state is not None:
            self.state.track_network(handle.name, handle.id, handle.created)
        return handle

    def realize(self, plan: ResourcePlan) -> dict[str, NetworkHandle]:
        names = plan.network_names
        return {
            "frontend": self.ensure_network(names.frontend),
            "shared": self.ensure_network(names.shared),
            "backend": self.ensure_network(names.backend, internal=True),
        }

    def attach(self, container: str, network: str) -> bool:
        """Connect ``container`` to ``network``; already attached counts as success."""
        try:
            if container in self.runtime.network_containers(network):
                return True
            self.runtime.connect_network(container, network)
        except APIError as exc:
            if not is_conflict(exc):
                raise
        db.log_event("INFO", f"Attached {container} to {network}.", namespace=self._ns())
        return True

    def detach(self, container: str, network: str) -> bool:
        """Disconnect ``container`` from ``network``; not attached counts as success."""
        try:
            if container not in self.runtime.network_containers(network):
                return True
            self.runtime.disconnect_network(container, network)
        except NotFound:
            return True
        except APIError as exc:
            if "is not connected" not in str(exc).lower():
                raise
        return True

    def _ns(self) -> str | None:
        return self.state.namespace if self.state else None
