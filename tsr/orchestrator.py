from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from . import db
from .health import wait_until
from .runtime import HARD_FAIL, OK, SOFT_FAIL, FailurePolicy, RunState, StepResult
from .settings import settings


# Lifecycle states
DECLARED = "declared"
STARTING = "starting"
READY = "ready"
FIRST_BOOT_INIT = "first_boot_init"
RUNNING = "running"
FAILED = "failed"
BLOCKED = "blocked"
SKIPPED = "skipped"


def _always() -> bool:
    return True


def _never() -> bool:
    return False


def _noop() -> None:
    return None


@dataclass
class ServiceSpec:
    """A startable service plus the hooks the orchestrator drives.

    ``first_boot_init`` may return a ``StepResult`` to report a soft failure
    (for instance an unverified credential); returning ``None`` means ok.
    Raising means the init failed hard.
    """

    name: str
    start: Callable[[], None] = _noop
    depends_on: tuple[str, ...] = ()
    readiness_probe: Callable[[], bool] = _always
    first_boot_marker: Callable[[], bool] = _never
    first_boot_init: Callable[[], StepResult | None] = _noop
    max_attempts: int | None = None
    interval_s: float | None = None


@dataclass
class OrchestrationResult:
    order: list[str]
    states: dict[str, str]
    results: list[StepResult] = field(default_factory=list)
    halted: bool = False

    @property
    def ok(self) -> bool:
        return not self.halted and all(r.outcome != HARD_FAIL for r in self.results)


class DependencyError(ValueError):
    pass


def startup_order(services: list[ServiceSpec]) -> list[str]:
    """Stable topological order; declaration order breaks ties."""
    names = [s.name for s in services]
    if len(set(names)) != len(names):
        raise DependencyError("Duplicate service names.")
    deps = {s.name: set(s.depends_on) for s in services}
    for name, ds in deps.items():
        unknown = ds - set(names)
        if unknown:
            raise DependencyError(f"Service '{name}' depends on unknown service(s): {', '.join(sorted(unknown))}.")

    order: list[str] = []
    placed: set[str] = set()
    while len(order) < len(names):
        progressed = False
        for name in names:
            if name in placed:
                continue
            if deps[name] <= placed:
                order.append(name)
                placed.add(name)
                progressed = True
                break
        if not progressed:
            remaining = [n for n in names if n not in placed]
            raise DependencyError(f"Dependency cycle among: {', '.join(remaining)}.")
    return order


class Orchestrator:
    """Brings services up in dependency order, each gated by its readiness probe.

    Per service: declared -> (barrier on depends_on) -> starting -> ready
    -> [first_boot_init] -> running. A dependency that never reaches running
    blocks its dependents; independent services keep going unless the policy
    says otherwise.
    """

    def __init__(
        self,
        state: RunState,
        policy: FailurePolicy | None = None,
        max_attempts: int | None = None,
        interval_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.state = state
        self.policy = policy or FailurePolicy()
        self.max_attempts = max_attempts if max_attempts is not None else settings.ready_max_attempts
        self.interval_s = interval_s if interval_s is not None else settings.ready_interval_s
        self.sleep = sleep

    def run(self, services: list[ServiceSpec]) -> OrchestrationResult:
        order = startup_order(services)
        by_name = {s.name: s for s in services}
        for name in order:
            self.state.set_state(name, DECLARED)

        results: list[StepResult] = []
        halted = False
        for name in order:
            if halted:
                self.state.set_state(name, SKIPPED)
                continue
            res = self._bring_up(by_name[name])
            results.extend(res)
            self.state.extend(res)
            worst = _worst(res)
            if worst == HARD_FAIL and not self.policy.continue_independent:
                halted = True
            elif worst == SOFT_FAIL and self.policy.halt_on_soft_fail:
                halted = True
            if halted:
                db.log_event("ERROR", f"Halting startup after '{name}' ({worst}).", namespace=self.state.namespace)

        return OrchestrationResult(
            order=order,
            states={n: self.state.state_of(n) or DECLARED for n in order},
            results=results,
            halted=halted,
        )

    def _bring_up(self, svc: ServiceSpec) -> list[StepResult]:
        ns = self.state.namespace
        not_running = [d for d in svc.depends_on if self.state.state_of(d) != RUNNING]
        if not_running:
            self.state.set_state(svc.name, BLOCKED)
            msg = f"Not started: dependency {', '.join(not_running)} is not running."
            db.log_event("ERROR", msg, service_name=svc.name, namespace=ns)
            return [StepResult("start", HARD_FAIL, msg, service=svc.name)]

        self.state.set_state(svc.name, STARTING)
        db.log_event("INFO", "Starting", service_name=svc.name, namespace=ns)
        try:
            svc.start()
        except Exception as e:
            self.state.set_state(svc.name, FAILED)
            msg = f"Start failed: {type(e).__name__}: {e}"
            db.log_event("ERROR", msg, service_name=svc.name, namespace=ns)
            return [StepResult("start", HARD_FAIL, msg, service=svc.name)]

        attempts = svc.max_attempts if svc.max_attempts is not None else self.max_attempts
        interval = svc.interval_s if svc.interval_s is not None else self.interval_s
        ready, used = wait_until(svc.readiness_probe, attempts, interval, sleep=self.sleep)
        if not ready:
            self.state.set_state(svc.name, FAILED)
            msg = f"Not ready after {used} attempts."
            db.log_event("ERROR", msg, service_name=svc.name, namespace=ns)
            return [StepResult("readiness", HARD_FAIL, msg, service=svc.name)]
        self.state.set_state(svc.name, READY)
        db.log_event("INFO", f"Ready after {used} attempt(s)", service_name=svc.name, namespace=ns)

        results = [StepResult("readiness", OK, f"ready after {used} attempt(s)", service=svc.name)]
        try:
            if svc.first_boot_marker():
                self.state.set_state(svc.name, FIRST_BOOT_INIT)
                db.log_event("INFO", "Fresh deployment: running first-boot init", service_name=svc.name, namespace=ns)
                init_res = svc.first_boot_init()
                results.append(init_res or StepResult("first_boot_init", OK, "", service=svc.name))
        except Exception as e:
            self.state.set_state(svc.name, FAILED)
            msg = f"First-boot init failed: {type(e).__name__}: {e}"
            db.log_event("ERROR", msg, service_name=svc.name, namespace=ns)
            results.append(StepResult("first_boot_init", HARD_FAIL, msg, service=svc.name))
            return results

        self.state.set_state(svc.name, RUNNING)
        return results


def _worst(results: list[StepResult]) -> str:
    outcomes = {r.outcome for r in results}
    if HARD_FAIL in outcomes:
        return HARD_FAIL
    if SOFT_FAIL in outcomes:
        return SOFT_FAIL
    return OK
