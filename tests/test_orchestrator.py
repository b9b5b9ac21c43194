import pytest
from docker.errors import APIError

from tsr.health import wait_until
from tsr.orchestrator import BLOCKED, FAILED, RUNNING, DependencyError, Orchestrator, ServiceSpec, startup_order
from tsr.runtime import HARD_FAIL, SOFT_FAIL, FailurePolicy, RunState, StepResult


def _orch(policy=None, attempts=3):
    return Orchestrator(RunState("demo-dev"), policy=policy, max_attempts=attempts, interval_s=0.0, sleep=lambda s: None)


def test_dependent_starts_only_after_dependency_is_ready():
    events = []
    db_checks = {"n": 0}

    def db_probe():
        db_checks["n"] += 1
        events.append(f"probe db #{db_checks['n']}")
        return db_checks["n"] >= 2

    services = [
        ServiceSpec("proxy", start=lambda: events.append("start proxy")),
        ServiceSpec("db", start=lambda: events.append("start db"), readiness_probe=db_probe),
        ServiceSpec("app", start=lambda: events.append("start app"), depends_on=("db",)),
    ]
    result = _orch().run(services)

    assert result.ok
    assert result.states == {"proxy": RUNNING, "db": RUNNING, "app": RUNNING}
    assert events.index("start app") > events.index("probe db #2")


def test_startup_order_is_stable():
    services = [ServiceSpec("app", depends_on=("db",)), ServiceSpec("proxy"), ServiceSpec("db")]
    assert startup_order(services) == ["proxy", "db", "app"]


def test_readiness_exhaustion_blocks_dependents_but_not_independents():
    started = []
    services = [
        ServiceSpec("db", start=lambda: started.append("db"), readiness_probe=lambda: False),
        ServiceSpec("app", start=lambda: started.append("app"), depends_on=("db",)),
        ServiceSpec("site", start=lambda: started.append("site")),
    ]
    result = _orch(attempts=4).run(services)

    assert result.states["db"] == FAILED
    assert result.states["app"] == BLOCKED
    assert result.states["site"] == RUNNING
    assert "app" not in started
    db_fail = [r for r in result.results if r.service == "db"][0]
    assert db_fail.outcome == HARD_FAIL
    assert db_fail.message == "Not ready after 4 attempts."


def test_fail_fast_policy_halts():
    services = [ServiceSpec("db", readiness_probe=lambda: False), ServiceSpec("site")]
    result = _orch(policy=FailurePolicy(continue_independent=False), attempts=1).run(services)
    assert result.halted
    assert result.states["site"] == "skipped"


def test_first_boot_init_runs_once():
    calls = []
    fresh = {"value": True}

    def init():
        calls.append("init")
        fresh["value"] = False
        return None

    spec = ServiceSpec("telehealth", first_boot_marker=lambda: fresh["value"], first_boot_init=init)
    _orch().run([spec])
    _orch().run([spec])
    assert calls == ["init"]


def test_first_boot_init_failure_is_hard_and_soft_result_propagates():
    def boom():
        raise RuntimeError("migrate failed")

    failed = _orch().run([ServiceSpec("t", first_boot_marker=lambda: True, first_boot_init=boom)])
    assert failed.states["t"] == FAILED
    assert failed.results[-1].outcome == HARD_FAIL

    soft = StepResult("credential", SOFT_FAIL, "UNVERIFIED", service="t")
    ok = _orch().run([ServiceSpec("t", first_boot_marker=lambda: True, first_boot_init=lambda: soft)])
    assert ok.states["t"] == RUNNING
    assert ok.results[-1] is soft


def test_halt_on_soft_fail():
    soft = StepResult("credential", SOFT_FAIL, "UNVERIFIED", service="a")
    services = [ServiceSpec("a", first_boot_marker=lambda: True, first_boot_init=lambda: soft), ServiceSpec("b")]
    result = _orch(policy=FailurePolicy(halt_on_soft_fail=True)).run(services)
    assert result.halted
    assert result.states["b"] == "skipped"


def test_start_exception_is_hard_fail():
    def bad():
        raise OSError("compose file missing")

    result = _orch().run([ServiceSpec("x", start=bad)])
    assert result.states["x"] == FAILED
    assert "compose file missing" in result.results[0].message


@pytest.mark.parametrize(
    "services",
    [
        [ServiceSpec("a", depends_on=("b",)), ServiceSpec("b", depends_on=("a",))],
        [ServiceSpec("a", depends_on=("ghost",))],
        [ServiceSpec("a"), ServiceSpec("a")],
    ],
)
def test_bad_dependency_graph_raises(services):
    with pytest.raises(DependencyError):
        startup_order(services)


def test_wait_until_does_not_sleep_after_last_attempt():
    slept = []
    ready, used = wait_until(lambda: False, 3, 1.5, sleep=slept.append)
    assert (ready, used) == (False, 3)
    assert slept == [1.5, 1.5]


def test_raising_probe_fails_only_its_service():
    def daemon_hiccup():
        raise APIError("500 Server Error: daemon hiccup")

    state = RunState("demo-dev")
    services = [
        ServiceSpec("db", readiness_probe=daemon_hiccup),
        ServiceSpec("app", depends_on=("db",)),
        ServiceSpec("site"),
    ]
    result = Orchestrator(state, max_attempts=2, interval_s=0.0, sleep=lambda s: None).run(services)

    assert result.states == {"db": FAILED, "app": BLOCKED, "site": RUNNING}
    assert [r.service for r in state.results] == ["db", "app", "site"]
    assert state.results[0].message == "Not ready after 2 attempts."


def test_wait_until_retries_after_probe_raises():
    calls = {"n": 0}

    def flaky():
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionError("refused")
        return True

    assert wait_until(flaky, 3, 0.0, sleep=lambda s: None) == (True, 2)
