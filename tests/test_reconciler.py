from dataclasses import replace

import pytest
from docker.errors import APIError

from tsr import db, envfile, stack
from tsr.docker_ops import COMPOSE_PROJECT_LABEL, ExecResult
from tsr.namespace import plan
from tsr.orchestrator import BLOCKED, FAILED, RUNNING
from tsr.proxy import ProxyReconciler
from tsr.reconciler import Reconciler
from tsr.runtime import HARD_FAIL, SOFT_FAIL
from tsr.settings import settings
from tsr.stack import TOKEN_ISSUE_CMD, TOKEN_KEY, PreconditionError

APP = "demo-dev-telehealth-app-1"
EMR = "demo-dev-openemr-openemr-1"


@pytest.fixture
def stack_root(tmp_path):
    root = tmp_path / "stacks"
    ns = root / "demo-dev"
    for d in ("proxy", "telehealth", "openemr"):
        (ns / d).mkdir(parents=True)
    (ns / "openemr" / ".env").write_text("OPENEMR_SITE=default\nTELEHEALTH_API_TOKEN=\n")
    return root


@pytest.fixture
def world(fake_runtime, fake_npm, stack_root, monkeypatch):
    # HTTP readiness probes hit localhost ports; the fake world is always up.
    monkeypatch.setattr(stack, "http_probe", lambda url, timeout_s=2.0: (lambda: True))
    fake_runtime.compose_services = {
        "proxy": ["proxy"],
        "telehealth": ["app", "database"],
        "openemr": ["openemr"],
    }
    fake_runtime.exec_handlers[(APP, " ".join(TOKEN_ISSUE_CMD))] = ExecResult(0, "\x1b[32mToken:\x1b[0m 4|Zx9Qk\n")
    cfg = replace(settings, stack_root=str(stack_root), ready_max_attempts=2, ready_interval_s=0.0, cert_path=None, cert_key_path=None)
    return fake_runtime, fake_npm, cfg


def _reconciler(world, **kw):
    runtime, npm, cfg = world
    rp = plan("demo", "dev", "localhost")
    proxy = ProxyReconciler("http://localhost:20302", session=npm, namespace=rp.namespace, sleep=lambda s: None)
    return Reconciler(rp, runtime=runtime, proxy=proxy, cfg=kw.pop("cfg", cfg), sleep=lambda s: None, **kw)


def _token_issues(runtime):
    return [c for c in runtime.calls if c[0] == "exec" and c[2] == " ".join(TOKEN_ISSUE_CMD)]


def test_fresh_deploy(world, stack_root):
    runtime, npm, _ = world
    state = _reconciler(world).deploy()

    assert state.failures() == []
    assert state.service_states == {"proxy": RUNNING, "telehealth": RUNNING, "app": RUNNING}
    assert sorted(state.created_networks) == ["demo-dev-backend", "demo-shared-network", "frontend-demo-dev"]
    assert envfile.get(str(stack_root / "demo-dev" / "openemr" / ".env"), TOKEN_KEY) == "4|Zx9Qk"
    assert sorted(h["domain_names"][0] for h in npm.hosts.values()) == ["dev-demo.localhost", "vc-dev-demo.localhost"]
    assert "demo-dev-proxy-proxy-1" in runtime.networks["demo-shared-network"]["members"]
    assert db.list_runs("demo-dev")[0].status == "ok"


def test_redeploy_is_idempotent(world, stack_root):
    runtime, npm, _ = world
    _reconciler(world).deploy()
    hosts_before = dict(npm.hosts)
    env_before = (stack_root / "demo-dev" / "openemr" / ".env").read_text()

    state = _reconciler(world).deploy()

    assert state.failures() == []
    assert state.created_networks == {}
    assert len(_token_issues(runtime)) == 1
    assert npm.hosts == hosts_before
    assert (stack_root / "demo-dev" / "openemr" / ".env").read_text() == env_before


def test_unverified_token_is_soft_fail(world):
    runtime, _, _ = world
    runtime.exec_handlers[(APP, " ".join(TOKEN_ISSUE_CMD))] = ExecResult(0, "created token plainvalue\n")
    state = _reconciler(world).deploy()
    soft = [f for f in state.failures() if f.outcome == SOFT_FAIL]
    assert soft and "UNVERIFIED" in soft[0].message
    assert state.service_states["app"] == RUNNING


def test_strict_credentials_block_the_emr(world):
    runtime, _, cfg = world
    runtime.exec_handlers[(APP, " ".join(TOKEN_ISSUE_CMD))] = ExecResult(0, "created token plainvalue\n")
    state = _reconciler(world, cfg=replace(cfg, strict_credentials=True)).deploy()
    assert state.service_states["telehealth"] == FAILED
    assert state.service_states["app"] == BLOCKED
    assert db.list_runs("demo-dev")[0].status == "failed"


def test_critical_init_step_failure(world):
    runtime, npm, _ = world
    runtime.exec_handlers[(APP, "php /var/www/artisan migrate")] = ExecResult(1, "SQLSTATE[HY000] connection refused")
    state = _reconciler(world).deploy()
    assert state.service_states["telehealth"] == FAILED
    assert any(f.outcome == HARD_FAIL and "migrate" in f.message for f in state.failures())
    # The proxy still comes up and the routes it can publish are published.
    assert state.service_states["proxy"] == RUNNING
    assert not any(h["domain_names"] == ["dev-demo.localhost"] for h in npm.hosts.values())


def test_missing_required_directory(world, stack_root):
    (stack_root / "demo-dev" / "proxy").rmdir()
    with pytest.raises(PreconditionError):
        _reconciler(world).deploy()


def test_reset_with_dropped_routes(world):
    runtime, npm, _ = world
    _reconciler(world).deploy()
    results = _reconciler(world).reset(drop_routes=True)
    assert npm.hosts == {}
    assert not [n for n in runtime.containers if n.startswith("demo-dev-")]
    assert results[0].step == "drop_routes"


def test_raising_readiness_probe_is_recorded_not_raised(world, monkeypatch):
    def daemon_hiccup():
        raise APIError("500 Server Error: daemon hiccup")

    monkeypatch.setattr(stack, "running_probe", lambda runtime, container: daemon_hiccup)
    state = _reconciler(world).deploy()

    assert state.service_states["proxy"] == FAILED
    assert state.service_states["app"] == RUNNING
    assert any(f.service == "proxy" and f.outcome == HARD_FAIL for f in state.failures())
    assert db.list_runs("demo-dev")[0].status == "failed"


def test_precondition_checked_before_reset_touches_anything(world, stack_root):
    runtime, _, _ = world
    runtime.add_container("demo-dev-openemr-openemr-1", labels={COMPOSE_PROJECT_LABEL: "demo-dev-openemr"})
    (stack_root / "demo-dev" / "proxy").rmdir()
    with pytest.raises(PreconditionError):
        _reconciler(world).deploy(reset=True, confirm_destructive=True)
    assert runtime.calls == []
    assert runtime.networks == {}
    assert "demo-dev-openemr-openemr-1" in runtime.containers
    assert db.list_runs("demo-dev")[0].status == "failed"


def test_shared_db_mode(world, stack_root):
    runtime, _, cfg = world
    runtime.compose_services["shared-db"] = ["shared-db"]
    (stack_root / "demo-dev" / "telehealth" / ".env").write_text("DB_HOST=database\n")
    state = _reconciler(world, cfg=replace(cfg, shared_db=True)).deploy()

    assert state.failures() == []
    assert state.service_states["shared-db"] == RUNNING
    assert (stack_root / "demo-dev" / "shared-db" / "docker-compose.yml").is_file()
    runs = [c[1] for c in runtime.calls if c[0] == "run"]
    assert runs.index("shared-db") < runs.index("telehealth") < runs.index("openemr")
    shared = "demo-dev-shared-db-shared-db-1"
    assert shared in runtime.networks["demo-shared-network"]["members"]
    assert envfile.get(str(stack_root / "demo-dev" / "openemr" / ".env"), "MYSQL_HOST") == shared
    assert envfile.get(str(stack_root / "demo-dev" / "telehealth" / ".env"), "DB_HOST") == shared
