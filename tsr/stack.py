"""The telehealth stack: which compose units exist and how each one comes up."""
from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Callable

from . import db, envfile
from .api_models import ProxyRoute
from .credentials import propagate, signal_reload
from .docker_ops import ComposeUnit, DockerRuntime
from .health import all_of, exec_probe, http_probe, running_probe
from .namespace import ResourcePlan
from .networks import TopologyManager
from .orchestrator import RUNNING, ServiceSpec
from .runtime import HARD_FAIL, OK, SOFT_FAIL, RunState, StepResult
from .settings import Settings, settings


TOKEN_KEY = "TELEHEALTH_API_TOKEN"


class PreconditionError(ValueError):
    pass


@dataclass(frozen=True)
class UnitDef:
    key: str  # service key in the resource plan
    directory: str  # compose directory inside the namespace's stack dir
    compose_name: str
    main_service: str  # compose service that receives traffic
    optional: bool = False
    depends_on: tuple[str, ...] = ()
    tiers: tuple[str, ...] = ("frontend",)
    websocket: bool = False
    routed: bool = True


SHARED_DB = "shared-db"

UNITS: tuple[UnitDef, ...] = (
    UnitDef("proxy", "proxy", "proxy", "proxy", tiers=("frontend", "shared"), routed=False),
    # Only started in shared-db mode; its directory is generated on demand.
    UnitDef(SHARED_DB, "shared-db", "shared-db", "shared-db", optional=True, tiers=("shared",), routed=False),
    # The EMR needs the telehealth token in its config before it boots.
    UnitDef("telehealth", "telehealth", "telehealth", "app", tiers=("frontend", "shared")),
    UnitDef("app", "openemr", "openemr", "openemr", depends_on=("telehealth",), tiers=("frontend", "shared")),
    UnitDef("conference", "jitsi-docker", "jitsi", "web", optional=True, websocket=True),
    UnitDef("site", "wordpress", "wordpress", "wordpress", optional=True),
)


def compose_project(plan: ResourcePlan, unit: UnitDef) -> str:
    return f"{plan.project_name}-{unit.compose_name}"


def compose_projects(plan: ResourcePlan) -> tuple[str, ...]:
    """Every compose project a namespace can own, whether or not it is running."""
    return tuple(compose_project(plan, u) for u in UNITS)


MYSQL_PING = ["mysqladmin", "ping", "-h", "localhost", "-u", "root", "--password=root", "--silent"]

# unit key -> keys rewritten in that unit's .env; "{host}" is the shared-db container.
SHARED_DB_CLIENTS: dict[str, dict[str, str]] = {
    "app": {"MYSQL_HOST": "{host}", "MYSQL_DATABASE": "openemr"},
    "telehealth": {
        "DB_HOST": "{host}",
        "DB_DATABASE": "telehealth",
        "DB_USERNAME": "telehealth",
        "DB_PASSWORD": "telehealth",
    },
    "site": {"WORDPRESS_DB_HOST": "{host}", "WORDPRESS_DB_NAME": "wordpress"},
}

SHARED_DB_COMPOSE = """\
services:
  shared-db:
    image: mariadb:latest
    restart: always
    environment:
      MARIADB_ROOT_PASSWORD: root
      MARIADB_DATABASE: shared
    volumes:
      - shared_db_data:/var/lib/mysql
      - ./init:/docker-entrypoint-initdb.d
    networks:
      - default
      - shared

volumes:
  shared_db_data:

networks:
  shared:
    name: ${SHARED_NETWORK}
    external: true
"""

SHARED_DB_INIT = """\
#!/bin/bash
set -eu
for db in openemr telehealth wordpress; do
  mysql -u root -proot -e "CREATE DATABASE IF NOT EXISTS $db CHARACTER SET utf8;"
  mysql -u root -proot -e "GRANT ALL ON $db.* TO '$db'@'%' IDENTIFIED BY '$db';"
done
mysql -u root -proot -e "FLUSH PRIVILEGES;"
"""


@dataclass(frozen=True)
class InitCommand:
    label: str
    cmd: list[str]
    user: str | None = None
    critical: bool = True


# Fresh telehealth deployment: deps, app key, schema, seed data. Guarded by the
# first-boot marker, so it runs once per fresh volume.
TELEHEALTH_INIT: tuple[InitCommand, ...] = (
    InitCommand("apt update", ["apt-get", "update"], user="0", critical=False),
    InitCommand("zip deps", ["apt-get", "install", "-y", "zip", "unzip", "libzip-dev"], user="0", critical=False),
    InitCommand("php zip ext", ["docker-php-ext-install", "zip"], user="0", critical=False),
    InitCommand("composer install", ["composer", "install", "--working-dir=/var/www"]),
    InitCommand("app key", ["php", "/var/www/artisan", "key:generate"]),
    InitCommand("migrate", ["php", "/var/www/artisan", "migrate", "--force"]),
    InitCommand("seed", ["php", "/var/www/artisan", "db:seed", "--force"], critical=False),
)
TOKEN_ISSUE_CMD = ["php", "/var/www/artisan", "token:issue"]


class InitFailed(RuntimeError):
    pass


class TelehealthStack:
    def __init__(
        self,
        plan: ResourcePlan,
        runtime: DockerRuntime,
        topology: TopologyManager,
        state: RunState,
        cfg: Settings | None = None,
        strict_credentials: bool | None = None,
        shared_db: bool | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.plan = plan
        self.runtime = runtime
        self.topology = topology
        self.state = state
        self.cfg = cfg or settings
        self.root = os.path.join(self.cfg.stack_root, plan.directory_name)
        self.strict_credentials = self.cfg.strict_credentials if strict_credentials is None else strict_credentials
        self.shared_db = self.cfg.shared_db if shared_db is None else shared_db
        self.sleep = sleep
        self._preexisting: dict[str, bool] = {}
        self._units = {u.key: u for u in UNITS}

    # --- naming -----------------------------------------------------------

    def unit_dir(self, key: str) -> str:
        return os.path.join(self.root, self._units[key].directory)

    def compose_unit(self, key: str) -> ComposeUnit:
        u = self._units[key]
        return ComposeUnit(
            name=u.compose_name,
            directory=self.unit_dir(key),
            project=compose_project(self.plan, u),
            env=self.unit_env(key),
        )

    def container(self, key: str, service: str | None = None) -> str:
        return self.compose_unit(key).container_name(service or self._units[key].main_service)

    def emr_config_path(self) -> str:
        return os.path.join(self.unit_dir("app"), ".env")

    def unit_env(self, key: str) -> dict[str, str]:
        p = self.plan
        nets = p.network_names
        env = {
            "FRONTEND_NETWORK": nets.frontend,
            "SHARED_NETWORK": nets.shared,
            "BACKEND_NETWORK": nets.backend,
            "PROXY_NETWORK": nets.frontend,
        }
        if key in p.domains:
            env["DOMAIN"] = p.domains[key]
        for role, port in p.ports.get(key, {}).items():
            env[f"{role.upper()}_PORT"] = str(port)
        if key == "telehealth":
            env["WEB_LISTEN_PORT"] = str(p.port("telehealth", "http"))
        return env

    def present_units(self) -> list[UnitDef]:
        out = []
        for u in UNITS:
            if u.key == SHARED_DB:
                if self.shared_db:
                    out.append(u)
            elif os.path.isdir(self.unit_dir(u.key)):
                out.append(u)
            elif not u.optional:
                raise PreconditionError(f"Required compose directory '{self.unit_dir(u.key)}' is missing.")
        if not os.path.isfile(self.emr_config_path()):
            raise PreconditionError(f"EMR config '{self.emr_config_path()}' is missing.")
        return out

    # --- lifecycle hooks --------------------------------------------------

    def _start(self, u: UnitDef) -> Callable[[], None]:
        def start() -> None:
            name = self.container(u.key)
            self._preexisting[u.key] = self.runtime.get_container(name) is not None
            for ref in self.runtime.run(self.compose_unit(u.key)):
                self.state.track_container(ref.name, ref.id)
            nets = self.plan.network_names
            for tier in u.tiers:
                self.topology.attach(name, getattr(nets, tier))

        return start

    def _probe(self, u: UnitDef) -> Callable[[], bool]:
        if u.key == "proxy":
            return all_of(
                running_probe(self.runtime, self.container("proxy")),
                http_probe(f"http://localhost:{self.plan.port('proxy', 'admin')}", timeout_s=self.cfg.http_timeout_s),
            )
        if u.key == SHARED_DB:
            return exec_probe(self.runtime, self.container(SHARED_DB), MYSQL_PING)
        if u.key == "telehealth":
            if self.shared_db:
                return running_probe(self.runtime, self.container("telehealth"))
            return exec_probe(self.runtime, self.container("telehealth", "database"), MYSQL_PING)
        if u.key in ("app", "site", "conference"):
            return http_probe(f"http://localhost:{self.plan.port(u.key, 'http')}", timeout_s=self.cfg.http_timeout_s)
        return running_probe(self.runtime, self.container(u.key))

    def telehealth_is_fresh(self) -> bool:
        """Fresh when its container is new this run, or the EMR holds no token yet."""
        if not self._preexisting.get("telehealth", False):
            return True
        return not envfile.get(self.emr_config_path(), TOKEN_KEY)

    def init_telehealth(self) -> StepResult:
        app = self.container("telehealth")
        ns = self.plan.namespace
        soft: list[str] = []
        for step in TELEHEALTH_INIT:
            res = self.runtime.exec(app, step.cmd, user=step.user)
            if res.ok:
                db.log_event("INFO", f"init: {step.label}", service_name="telehealth", namespace=ns)
                continue
            if step.critical:
                raise InitFailed(f"{step.label} exited {res.exit_code}: {res.output.strip()[-300:]}")
            soft.append(step.label)
            db.log_event("WARN", f"init: {step.label} exited {res.exit_code}; continuing", service_name="telehealth", namespace=ns)

        issued = self.runtime.exec(app, TOKEN_ISSUE_CMD)
        if not issued.ok:
            raise InitFailed(f"token:issue exited {issued.exit_code}")

        emr = self.container("app")
        _, result = propagate(
            issued.output,
            source_service="telehealth",
            target_service="app",
            target_config_path=self.emr_config_path(),
            target_key=TOKEN_KEY,
            reload=lambda: signal_reload(
                self.runtime,
                emr,
                probe=self._probe(self._units["app"]),
                max_attempts=self.cfg.ready_max_attempts,
                interval_s=self.cfg.ready_interval_s,
                sleep=self.sleep,
            ),
            strict=self.strict_credentials,
            namespace=ns,
        )
        if soft and result.ok:
            return StepResult("first_boot_init", SOFT_FAIL, f"non-critical steps failed: {', '.join(soft)}", service="telehealth")
        return result

    def prepare(self) -> list[StepResult]:
        """Write the shared-db unit and point its clients at it (shared-db mode only)."""
        if not self.shared_db:
            return []
        ns = self.plan.namespace
        unit_dir = self.unit_dir(SHARED_DB)
        init_dir = os.path.join(unit_dir, "init")
        compose_file = os.path.join(unit_dir, "docker-compose.yml")
        init_file = os.path.join(init_dir, "create-multiple-databases.sh")
        try:
            os.makedirs(init_dir, exist_ok=True)
            if not os.path.isfile(compose_file):
                with open(compose_file, "w", encoding="utf-8") as fh:
                    fh.write(SHARED_DB_COMPOSE)
            if not os.path.isfile(init_file):
                with open(init_file, "w", encoding="utf-8") as fh:
                    fh.write(SHARED_DB_INIT)
                os.chmod(init_file, 0o755)
        except OSError as e:
            return [StepResult("shared_db_unit", HARD_FAIL, f"{type(e).__name__}: {e}", service=SHARED_DB)]

        results = [StepResult("shared_db_unit", OK, unit_dir, service=SHARED_DB)]
        host = self.container(SHARED_DB)
        present_keys = {u.key for u in self.present_units()}
        for key, values in SHARED_DB_CLIENTS.items():
            path = self.emr_config_path() if key == "app" else os.path.join(self.unit_dir(key), ".env")
            if key not in present_keys or not os.path.isfile(path):
                continue
            changed = [k for k, v in values.items() if envfile.set_value(path, k, v.format(host=host))]
            if changed:
                db.log_event("INFO", f"Pointed {', '.join(changed)} at {host}.", service_name=key, namespace=ns)
            results.append(StepResult("shared_db_config", OK, f"{len(changed)} key(s) changed", service=key))
        return results

    # --- specs ------------------------------------------------------------

    def services(self) -> list[ServiceSpec]:
        present = self.present_units()
        present_keys = {u.key for u in present}
        specs = []
        for u in present:
            depends_on = tuple(d for d in u.depends_on if d in present_keys)
            if SHARED_DB in present_keys and u.key in SHARED_DB_CLIENTS:
                depends_on = (SHARED_DB, *depends_on)
            spec = ServiceSpec(
                name=u.key,
                start=self._start(u),
                depends_on=depends_on,
                readiness_probe=self._probe(u),
            )
            if u.key == "telehealth":
                spec.first_boot_marker = self.telehealth_is_fresh
                spec.first_boot_init = self.init_telehealth
            specs.append(spec)
        return specs

    def routes(self) -> dict[str, ProxyRoute]:
        out = {}
        for u in UNITS:
            if not u.routed or self.state.state_of(u.key) != RUNNING:
                continue
            out[u.key] = ProxyRoute(
                domain_names=[self.plan.domains[u.key]],
                forward_host=self.container(u.key),
                forward_port=80,
                ssl_forced=True,
                allow_websocket_upgrade=u.websocket,
            )
        return out
