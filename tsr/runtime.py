from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


OK = "ok"
SOFT_FAIL = "soft_fail"
HARD_FAIL = "hard_fail"


@dataclass(frozen=True)
class StepResult:
    step: str
    outcome: str  # ok|soft_fail|hard_fail
    message: str = ""
    service: str | None = None
    at: str = field(default_factory=utc_now, compare=False)

    @property
    def ok(self) -> bool:
        return self.outcome == OK

    @property
    def failed(self) -> bool:
        return self.outcome != OK

    def as_dict(self) -> dict[str, str | None]:
        return {"step": self.step, "service": self.service, "outcome": self.outcome, "message": self.message}


@dataclass(frozen=True)
class FailurePolicy:
    """Caller-decided answers to "continue anyway?"."""

    halt_on_soft_fail: bool = False
    # After a hard fail, keep starting services that do not depend on the failed one.
    continue_independent: bool = True


class RunState:
    """In-memory state of one reconciliation run.

    Resources created by this run are tracked by id. Name-based discovery is
    only used to adopt leftovers from earlier runs.
    """

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace
        self.lock = Lock()
        self.created_networks: dict[str, str] = {}  # name -> id
        self.adopted_networks: dict[str, str] = {}
        self.containers: dict[str, str] = {}  # container name -> id
        self.service_states: dict[str, str] = {}  # service -> lifecycle state
        self.results: list[StepResult] = []

    def track_network(self, name: str, network_id: str, created: bool) -> None:
        with self.lock:
            if created:
                self.created_networks[name] = network_id
            else:
                self.adopted_networks.setdefault(name, network_id)

    def track_container(self, name: str, container_id: str) -> None:
        with self.lock:
            self.containers[name] = container_id

    def set_state(self, service: str, state: str) -> None:
        with self.lock:
            self.service_states[service] = state

    def state_of(self, service: str) -> str | None:
        with self.lock:
            return self.service_states.get(service)

    def record(self, result: StepResult) -> StepResult:
        with self.lock:
            self.results.append(result)
        return result

    def extend(self, results: list[StepResult]) -> None:
        with self.lock:
            self.results.extend(results)

    def failures(self) -> list[StepResult]:
        with self.lock:
            return [r for r in self.results if r.failed]

    def summary(self) -> dict:
        with self.lock:
            return {
                "namespace": self.namespace,
                "services": dict(self.service_states),
                "networks_created": sorted(self.created_networks),
                "failures": [r.as_dict() for r in self.results if r.failed],
                "steps": [r.as_dict() for r in self.results],
            }
