"""Namespace allocation: (project, environment, domain base) -> resource plan.

Everything here is pure. Two calls with the same input return equal plans, and
nothing touches Docker, the filesystem or the network.

Port layout::

    port = PORT_BASE + PROJECT_STRIDE * project_index + ENV_OFFSETS[env] + slot

Each project owns one stride-sized block; each environment owns a 100-port
sub-block inside it; each (service, role) owns a fixed slot below 100. In
production the proxy's well-known ports (80/443) only receive the project
offset, so a project can run a single production namespace on one host.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping


ENVIRONMENTS = ("dev", "staging", "test", "production")

PORT_BASE = 20000
PROJECT_STRIDE = 1000
MAX_PROJECTS = 20

ENV_OFFSETS = {
    "production": 0,
    "staging": 100,
    "test": 200,
    "dev": 300,
}

# service -> role -> slot inside an environment block
PORT_SLOTS: dict[str, dict[str, int]] = {
    "proxy": {"http": 0, "https": 1, "admin": 2},
    "app": {"http": 10, "https": 11},
    "telehealth": {"http": 20, "db": 21},
    "conference": {"http": 30, "https": 31, "xmpp": 32, "jvb": 33},
    "site": {"http": 40, "db": 41},
}

WELL_KNOWN_PORTS = {
    ("proxy", "http"): 80,
    ("proxy", "https"): 443,
}

# Subdomain label per service; the EMR ("app") is published on the bare name.
DOMAIN_LABELS = {
    "app": "",
    "telehealth": "vc",
    "conference": "vcbknd",
    "site": "www",
    "proxy": "proxy",
}

# Projects whose public name differs from their internal one.
DISPLAY_NAMES = {"official": "notes"}

DEFAULT_PROJECTS = ("official", "demo", "sandbox", "training")

PROJECT_RE = re.compile(r"^[a-z][a-z0-9\-]{0,30}$")


@dataclass(frozen=True)
class Environment:
    project: str
    environment: str
    domain_base: str

    @property
    def namespace(self) -> str:
        return f"{self.project}-{self.environment}"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@dataclass(frozen=True)
class NetworkNames:
    frontend: str
    shared: str
    backend: str

    def all(self) -> tuple[str, str, str]:
        return (self.frontend, self.shared, self.backend)


@dataclass(frozen=True)
class ResourcePlan:
    env: Environment
    directory_name: str
    project_name: str
    port_offset: int
    ports: Mapping[str, Mapping[str, int]] = field(compare=False)
    domains: Mapping[str, str] = field(compare=False)
    network_names: NetworkNames

    @property
    def namespace(self) -> str:
        return self.project_name

    def port(self, service: str, role: str = "http") -> int:
        return self.ports[service][role]

    def all_ports(self) -> set[int]:
        return {p for roles in self.ports.values() for p in roles.values()}

    def as_dict(self) -> dict:
        return {
            "project": self.env.project,
            "environment": self.env.environment,
            "domain_base": self.env.domain_base,
            "directory_name": self.directory_name,
            "project_name": self.project_name,
            "port_offset": self.port_offset,
            "ports": {s: dict(r) for s, r in self.ports.items()},
            "domains": dict(self.domains),
            "network_names": {
                "frontend": self.network_names.frontend,
                "shared": self.network_names.shared,
                "backend": self.network_names.backend,
            },
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourcePlan):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __hash__(self) -> int:
        return hash((self.project_name, self.port_offset, self.env.domain_base))


def validate_environment(environment: str) -> None:
    if environment not in ENVIRONMENTS:
        raise ValueError(f"Unknown environment '{environment}'. Expected one of: {', '.join(ENVIRONMENTS)}.")


def project_index(project: str, projects: tuple[str, ...] = DEFAULT_PROJECTS) -> int:
    if len(projects) > MAX_PROJECTS:
        raise ValueError(f"Project registry holds {len(projects)} projects; at most {MAX_PROJECTS} fit the port range.")
    if len(set(projects)) != len(projects):
        raise ValueError("Project registry contains duplicates.")
    if not PROJECT_RE.match(project):
        raise ValueError("Invalid project name. Use lowercase letters/numbers and hyphen, starting with a letter.")
    try:
        return projects.index(project)
    except ValueError:
        raise ValueError(
            f"Unknown project '{project}'. Registered projects: {', '.join(projects)}."
        ) from None


def display_name(project: str) -> str:
    return DISPLAY_NAMES.get(project, project)


def synthesize_domain(service: str, env: Environment) -> str:
    label = DOMAIN_LABELS[service]
    parts = [label] if label else []
    if not env.is_production:
        parts.append(env.environment)
    parts.append(display_name(env.project))
    return f"{'-'.join(parts)}.{env.domain_base}"


def _ports(env: Environment, index: int) -> dict[str, dict[str, int]]:
    block = PORT_BASE + PROJECT_STRIDE * index + ENV_OFFSETS[env.environment]
    ports: dict[str, dict[str, int]] = {}
    for service, roles in PORT_SLOTS.items():
        ports[service] = {}
        for role, slot in roles.items():
            well_known = WELL_KNOWN_PORTS.get((service, role))
            if env.is_production and well_known is not None:
                ports[service][role] = well_known + PROJECT_STRIDE * index
            else:
                ports[service][role] = block + slot
    return ports


def plan(
    project: str,
    environment: str,
    domain_base: str,
    projects: tuple[str, ...] = DEFAULT_PROJECTS,
) -> ResourcePlan:
    """Compute the resource plan for one namespace.

    Unknown projects or environments raise ``ValueError``: they are caller
    precondition violations, validated at the CLI boundary.
    """
    validate_environment(environment)
    index = project_index(project, projects)
    if not domain_base or domain_base.startswith(".") or " " in domain_base:
        raise ValueError(f"Invalid domain base '{domain_base}'.")

    env = Environment(project=project, environment=environment, domain_base=domain_base)
    ports = _ports(env, index)
    domains = {service: synthesize_domain(service, env) for service in DOMAIN_LABELS}

    return ResourcePlan(
        env=env,
        directory_name=env.namespace,
        project_name=env.namespace,
        port_offset=PORT_BASE + PROJECT_STRIDE * index + ENV_OFFSETS[environment],
        ports=MappingProxyType({s: MappingProxyType(r) for s, r in ports.items()}),
        domains=MappingProxyType(domains),
        network_names=NetworkNames(
            frontend=f"frontend-{project}-{environment}",
            shared=f"{project}-shared-network",
            backend=f"{project}-{environment}-backend",
        ),
    )
