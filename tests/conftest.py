import json
import os
import sys
from dataclasses import replace

import pytest
from docker.errors import APIError

# Ensure project root is importable (so `import cli` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from tsr import db  # noqa: E402
from tsr.docker_ops import COMPOSE_PROJECT_LABEL, ContainerRef, ExecResult, NetworkRef  # noqa: E402


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Every test gets its own sqlite journal."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "tsr.db")))
    db.init_db()
    return db


class FakeRuntime:
    """In-memory stand-in for DockerRuntime."""

    def __init__(self):
        self.containers: dict[str, dict] = {}  # name -> {id, status, labels}
        self.networks: dict[str, dict] = {}  # name -> {id, internal, members: set}
        self.volumes: set[str] = set()
        self.calls: list[tuple] = []
        self.exec_handlers: dict[tuple[str, str], ExecResult] = {}
        self.exec_default = ExecResult(0, "")
        self.compose_services: dict[str, list[str]] = {}  # unit name -> compose services
        self.busy_networks: set[str] = set()
        self._seq = 0

    def _id(self) -> str:
        self._seq += 1
        return f"id{self._seq:04d}"

    # containers
    def add_container(self, name, status="running", labels=None):
        self.containers[name] = {"id": self._id(), "status": status, "labels": labels or {}}

    def _ref(self, name):
        c = self.containers[name]
        return ContainerRef(id=c["id"], name=name, status=c["status"], labels=dict(c["labels"]))

    def list_containers(self, name_contains=None, labels=None):
        out = []
        for name, c in self.containers.items():
            if name_contains and name_contains not in name:
                continue
            if labels and any(c["labels"].get(k) != v for k, v in labels.items()):
                continue
            out.append(self._ref(name))
        return out

    def get_container(self, name_or_id):
        return self._ref(name_or_id) if name_or_id in self.containers else None

    def run(self, unit):
        self.calls.append(("run", unit.name))
        for svc in self.compose_services.get(unit.name, []):
            name = unit.container_name(svc)
            if name in self.containers:
                self.containers[name]["status"] = "running"
            else:
                self.add_container(name, labels={COMPOSE_PROJECT_LABEL: unit.project})
        return self.list_containers(labels={COMPOSE_PROJECT_LABEL: unit.project})

    def exec(self, container, cmd, user=None):
        self.calls.append(("exec", container, " ".join(cmd)))
        for (cname, prefix), res in self.exec_handlers.items():
            if cname == container and " ".join(cmd).startswith(prefix):
                return res
        return self.exec_default

    def restart(self, container):
        self.calls.append(("restart", container))

    def stop(self, container):
        self.calls.append(("stop", container))
        if container in self.containers:
            self.containers[container]["status"] = "exited"

    def remove_container(self, container, force=True):
        self.calls.append(("remove_container", container))
        self.containers.pop(container, None)
        for n in self.networks.values():
            n["members"].discard(container)

    # networks
    def get_network(self, name):
        n = self.networks.get(name)
        return NetworkRef(id=n["id"], name=name) if n else None

    def list_networks(self, name_contains=None):
        return [NetworkRef(id=n["id"], name=name) for name, n in self.networks.items() if not name_contains or name_contains in name]

    def create_network(self, name, internal=False):
        self.calls.append(("create_network", name))
        if name in self.networks:
            raise APIError("409 Conflict: network with name already exists")
        self.networks[name] = {"id": self._id(), "internal": internal, "members": set()}
        return NetworkRef(id=self.networks[name]["id"], name=name)

    def network_containers(self, name):
        return sorted(self.networks[name]["members"])

    def connect_network(self, container, network):
        self.calls.append(("connect", container, network))
        self.networks[network]["members"].add(container)

    def disconnect_network(self, container, network):
        self.calls.append(("disconnect", container, network))
        self.networks[network]["members"].discard(container)

    def remove_network(self, name):
        self.calls.append(("remove_network", name))
        if name in self.busy_networks or self.networks.get(name, {}).get("members"):
            raise APIError(f"error while removing network: network {name} has active endpoints")
        self.networks.pop(name, None)

    # volumes
    def list_volumes(self, name_contains=None):
        return sorted(v for v in self.volumes if not name_contains or name_contains in v)

    def remove_volume(self, name):
        self.calls.append(("remove_volume", name))
        self.volumes.discard(name)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, raw=None):
        self.status_code = status_code
        self._payload = payload
        self._raw = raw
        if raw is not None:
            self.content = raw
        else:
            self.content = b"" if payload is None else json.dumps(payload).encode()
        self.text = self.content.decode()

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._raw is not None:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class FakeNpm:
    """Enough of Nginx Proxy Manager's API to exercise the reconciler."""

    def __init__(self, identity="admin@example.com", secret="changeme", fail_logins=0):
        self.identity = identity
        self.secret = secret
        self.fail_logins = fail_logins
        self.token = "tok-123"
        self.hosts: dict[int, dict] = {}
        self.certs: dict[int, dict] = {}
        self.uploads: list[int] = []
        self.requests: list[tuple[str, str]] = []
        self.fail_post_for: set[str] = set()
        self.html_post_for: set[str] = set()
        self._next = 1

    def _new_id(self):
        i = self._next
        self._next += 1
        return i

    def get(self, url, timeout=None):
        self.requests.append(("GET", url))
        return FakeResponse(200, {})

    def post(self, url, json=None, timeout=None):
        self.requests.append(("POST", url))
        if url.endswith("/api/tokens"):
            if self.fail_logins > 0:
                self.fail_logins -= 1
                return FakeResponse(503, {"error": "starting"})
            if json == {"identity": self.identity, "secret": self.secret}:
                return FakeResponse(200, {"token": self.token, "expires": "2030-01-01"})
            return FakeResponse(401, {"error": {"message": "Invalid email or password"}})
        return FakeResponse(404, {})

    def request(self, method, url, headers=None, timeout=None, json=None, files=None):
        self.requests.append((method, url))
        if headers is None or headers.get("Authorization") != f"Bearer {self.token}":
            return FakeResponse(401, {"error": "unauthorized"})
        path = url.split("/api", 1)[1]
        if path == "/nginx/proxy-hosts" and method == "GET":
            return FakeResponse(200, list(self.hosts.values()))
        if path == "/nginx/proxy-hosts" and method == "POST":
            if any(d in self.fail_post_for for d in json["domain_names"]):
                return FakeResponse(500, {"error": "boom"})
            if any(d in self.html_post_for for d in json["domain_names"]):
                return FakeResponse(200, raw=b"<html>Bad Gateway</html>")
            hid = self._new_id()
            self.hosts[hid] = {"id": hid, **json}
            return FakeResponse(201, self.hosts[hid])
        if path.startswith("/nginx/proxy-hosts/") and method == "DELETE":
            self.hosts.pop(int(path.rsplit("/", 1)[1]), None)
            return FakeResponse(200, True)
        if path == "/nginx/certificates" and method == "GET":
            return FakeResponse(200, list(self.certs.values()))
        if path == "/nginx/certificates" and method == "POST":
            cid = self._new_id()
            self.certs[cid] = {"id": cid, "domain_names": [], **json}
            return FakeResponse(201, self.certs[cid])
        if path.endswith("/upload") and method == "POST":
            self.uploads.append(int(path.split("/")[3]))
            return FakeResponse(200, {"certificate": "ok"})
        return FakeResponse(404, {"error": "not found"})


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def fake_npm():
    return FakeNpm()


@pytest.fixture
def no_sleep():
    slept = []
    return slept.append
