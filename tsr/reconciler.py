from __future__ import annotations

import json
import time
from typing import Callable

from docker.errors import DockerException

from . import db
from .docker_ops import DockerRuntime, RuntimeUnavailable
from .namespace import ResourcePlan
from .networks import TopologyManager
from .orchestrator import RUNNING, Orchestrator
from .proxy import KeyMaterial, ProxyApiError, ProxyAuthError, ProxyReconciler
from .runtime import HARD_FAIL, OK, SOFT_FAIL, FailurePolicy, RunState, StepResult
from .settings import Settings, settings as default_settings
from .stack import TelehealthStack
from .teardown import TeardownEngine


class Reconciler:
    """Drives one namespace from its plan to running state (or back to nothing).

    The plan is threaded explicitly through every step; nothing is handed over
    through environment variables or globals.
    """

    def __init__(
        self,
        plan: ResourcePlan,
        runtime: DockerRuntime | None = None,
        proxy: ProxyReconciler | None = None,
        policy: FailurePolicy | None = None,
        cfg: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.plan = plan
        self.cfg = cfg or default_settings
        self.runtime = runtime or DockerRuntime(self.cfg.compose_binary)
        self.policy = policy or FailurePolicy()
        self.sleep = sleep
        self._proxy = proxy

    @property
    def namespace(self) -> str:
        return self.plan.namespace

    def proxy_client(self) -> ProxyReconciler:
        if self._proxy is None:
            url = self.cfg.proxy_url or f"http://localhost:{self.plan.port('proxy', 'admin')}"
            self._proxy = ProxyReconciler(url, timeout_s=self.cfg.http_timeout_s, namespace=self.namespace, sleep=self.sleep)
        return self._proxy

    def _key_material(self) -> KeyMaterial | None:
        if self.cfg.cert_path and self.cfg.cert_key_path:
            return KeyMaterial.from_files(self.cfg.cert_path, self.cfg.cert_key_path)
        return None

    # --- verbs ------------------------------------------------------------

    def deploy(
        self,
        force: bool = False,
        reset: bool = False,
        confirm_destructive: bool = False,
        restart_proxy: bool = False,
    ) -> RunState:
        state = RunState(self.namespace)
        run_id = db.start_run(self.namespace, "deploy")
        db.log_event("INFO", f"Deploy started (force={force}, reset={reset})", namespace=self.namespace)
        ok = False
        try:
            self._deploy(state, force, reset, confirm_destructive, restart_proxy)
            ok = not state.failures()
        finally:
            db.finish_run(run_id, ok=ok, summary=json.dumps(state.summary()["failures"]))
        return state

    def _deploy(self, state: RunState, force: bool, reset: bool, confirm_destructive: bool, restart_proxy: bool) -> None:
        topology = TopologyManager(self.runtime, state)
        stack = TelehealthStack(self.plan, self.runtime, topology, state, cfg=self.cfg, sleep=self.sleep)
        # Raises PreconditionError before anything on the host is touched.
        services = stack.services()

        if reset:
            state.extend(TeardownEngine(self.runtime, self.plan).reset(confirm_destructive=confirm_destructive))

        prepared = stack.prepare()
        state.extend(prepared)
        if any(r.outcome == HARD_FAIL for r in prepared):
            return

        try:
            topology.realize(self.plan)
        except (RuntimeUnavailable, DockerException) as e:
            state.record(StepResult("networks", HARD_FAIL, f"{type(e).__name__}: {e}"))
            db.log_event("ERROR", f"Networks not realized: {e}", namespace=self.namespace)
            return
        state.record(StepResult("networks", OK, ", ".join(self.plan.network_names.all())))

        orchestrator = Orchestrator(
            state,
            policy=self.policy,
            max_attempts=self.cfg.ready_max_attempts,
            interval_s=self.cfg.ready_interval_s,
            sleep=self.sleep,
        )
        result = orchestrator.run(services)
        if result.halted:
            return

        if state.state_of("proxy") != RUNNING:
            state.record(StepResult("routes", HARD_FAIL, "proxy is not running; no routes published", service="proxy"))
            return
        self._publish(state, stack, force, restart_proxy)

    def _publish(self, state: RunState, stack: TelehealthStack, force: bool, restart_proxy: bool) -> None:
        proxy = self.proxy_client()
        if not proxy.wait_available(max_attempts=self.cfg.ready_max_attempts, interval_s=self.cfg.ready_interval_s):
            state.record(StepResult("proxy_api", HARD_FAIL, "control API never answered", service="proxy"))
            return
        try:
            proxy.authenticate(self.cfg.proxy_identity, self.cfg.proxy_secret)
        except ProxyAuthError as e:
            state.record(StepResult("proxy_auth", HARD_FAIL, str(e), service="proxy"))
            return

        routes = stack.routes()
        cert_name = f"{self.namespace}.{self.plan.env.domain_base}"
        try:
            key_material = self._key_material()
        except OSError as e:
            state.record(StepResult("certificate", SOFT_FAIL, f"key material unreadable: {e}", service="proxy"))
            key_material = None
        state.extend(proxy.publish(routes, force=force, cert_name=cert_name, key_material=key_material))

        if restart_proxy:
            try:
                self.runtime.restart(stack.container("proxy"))
                state.record(StepResult("proxy_restart", OK, "", service="proxy"))
            except DockerException as e:
                state.record(StepResult("proxy_restart", SOFT_FAIL, str(e), service="proxy"))

    def stop(self) -> list[StepResult]:
        run_id = db.start_run(self.namespace, "stop")
        results = TeardownEngine(self.runtime, self.plan).stop()
        db.finish_run(run_id, ok=all(r.ok for r in results))
        return results

    def reset(self, confirm_destructive: bool = False, drop_routes: bool = False) -> list[StepResult]:
        run_id = db.start_run(self.namespace, "reset")
        results: list[StepResult] = []
        if drop_routes:
            results.append(self._drop_routes())
        results += TeardownEngine(self.runtime, self.plan).reset(confirm_destructive=confirm_destructive)
        db.finish_run(run_id, ok=all(r.outcome != HARD_FAIL for r in results))
        return results

    def _drop_routes(self) -> StepResult:
        domains = frozenset(d.lower() for d in self.plan.domains.values())
        proxy = self.proxy_client()
        try:
            proxy.authenticate(self.cfg.proxy_identity, self.cfg.proxy_secret, attempts=1)
            removed = proxy.delete_routes(domains)
        except ProxyApiError as e:
            return StepResult("drop_routes", SOFT_FAIL, str(e), service="proxy")
        return StepResult("drop_routes", OK, f"removed {removed} proxy host(s)", service="proxy")
