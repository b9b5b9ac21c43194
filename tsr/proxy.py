from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

import requests
from pydantic import ValidationError

from . import db
from .api_models import (
    NO_CERTIFICATE,
    Certificate,
    CertificateCreate,
    ProxyHost,
    ProxyHostPayload,
    ProxyRoute,
    TokenRequest,
    TokenResponse,
)
from .runtime import OK, SOFT_FAIL, StepResult
from .settings import settings


# Credentials Nginx Proxy Manager ships with before first login.
FACTORY_IDENTITY = "admin@example.com"
FACTORY_SECRET = "changeme"


class ProxyApiError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProxyAuthError(ProxyApiError):
    pass


@dataclass(frozen=True)
class KeyMaterial:
    certificate: bytes
    certificate_key: bytes

    @classmethod
    def from_files(cls, cert_path: str, key_path: str) -> "KeyMaterial":
        with open(cert_path, "rb") as fh:
            cert = fh.read()
        with open(key_path, "rb") as fh:
            key = fh.read()
        return cls(certificate=cert, certificate_key=key)


def covers(cert_domain: str, domain: str) -> bool:
    """Exact match, or a single-label wildcard (``*.example.com``)."""
    cert_domain = cert_domain.lower()
    domain = domain.lower()
    if cert_domain == domain:
        return True
    if cert_domain.startswith("*."):
        suffix = cert_domain[1:]
        head = domain[: -len(suffix)] if domain.endswith(suffix) else ""
        return bool(head) and "." not in head
    return False


class ProxyReconciler:
    """Drives routes and TLS bindings through the proxy's REST control API.

    Every call is idempotent except the explicit force-replace path of
    ``upsert_route``.
    """

    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        timeout_s: float | None = None,
        namespace: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base = base_url.rstrip("/") + "/api"
        self.session = session or requests.Session()
        self.timeout_s = timeout_s if timeout_s is not None else settings.http_timeout_s
        self.namespace = namespace
        self.sleep = sleep
        self._token: str | None = None

    # --- plumbing ---------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        if not self._token:
            raise ProxyAuthError("Not authenticated with the proxy control API.")
        return {"Authorization": f"Bearer {self._token}"}

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base}{path}"
        try:
            r = self.session.request(method, url, headers=self._headers(), timeout=self.timeout_s, **kwargs)
        except requests.RequestException as e:
            raise ProxyApiError(f"{method} {path} failed: {type(e).__name__}: {e}") from e
        if r.status_code >= 400:
            raise ProxyApiError(f"{method} {path} -> HTTP {r.status_code}: {r.text[:200]}", status_code=r.status_code)
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise ProxyApiError(f"{method} {path} -> HTTP {r.status_code}: response is not JSON", status_code=r.status_code) from e

    # --- auth -------------------------------------------------------------

    def wait_available(self, max_attempts: int = 30, interval_s: float = 2.0) -> bool:
        """The admin UI's container can be healthy before its API answers."""
        for attempt in range(1, max(1, max_attempts) + 1):
            try:
                self.session.get(self.base.rsplit("/api", 1)[0], timeout=self.timeout_s)
                return True
            except requests.RequestException:
                if attempt < max_attempts:
                    self.sleep(interval_s)
        return False

    def _try_token(self, identity: str, secret: str) -> str | None:
        body = TokenRequest(identity=identity, secret=secret).model_dump()
        try:
            r = self.session.post(f"{self.base}/tokens", json=body, timeout=self.timeout_s)
        except requests.RequestException:
            return None
        if not r.ok:
            return None
        try:
            return TokenResponse.model_validate(r.json()).token
        except (ValueError, ValidationError):
            return None

    def authenticate(
        self,
        identity: str,
        secret: str,
        attempts: int | None = None,
        backoff_s: float | None = None,
        allow_factory_default: bool = True,
    ) -> str:
        attempts = max(1, attempts if attempts is not None else settings.proxy_auth_attempts)
        backoff_s = backoff_s if backoff_s is not None else settings.proxy_auth_backoff_s

        candidates = [(identity, secret)]
        if allow_factory_default and (identity, secret) != (FACTORY_IDENTITY, FACTORY_SECRET):
            candidates.append((FACTORY_IDENTITY, FACTORY_SECRET))

        for attempt in range(1, attempts + 1):
            for ident, sec in candidates:
                token = self._try_token(ident, sec)
                if token:
                    self._token = token
                    if ident != identity:
                        db.log_event("WARN", "Authenticated with factory default proxy credentials; change them.", namespace=self.namespace)
                    else:
                        db.log_event("INFO", "Authenticated with proxy control API.", namespace=self.namespace)
                    return token
            if attempt < attempts:
                self.sleep(backoff_s)

        db.log_event("ERROR", f"Proxy authentication failed after {attempts} attempts.", namespace=self.namespace)
        raise ProxyAuthError(f"Could not authenticate with {self.base} after {attempts} attempts.")

    # --- routes -----------------------------------------------------------

    def list_routes(self) -> list[ProxyHost]:
        data = self._request("GET", "/nginx/proxy-hosts") or []
        return [ProxyHost.model_validate(x) for x in data]

    def find_routes(self, domains: frozenset[str]) -> list[ProxyHost]:
        """Every proxy host sharing at least one domain with ``domains``."""
        return [host for host in self.list_routes() if host.domain_set() & domains]

    def find_route(self, domains: frozenset[str]) -> ProxyHost | None:
        """The host serving exactly ``domains`` if there is one, else any overlapping host."""
        matches = self.find_routes(domains)
        for host in matches:
            if host.domain_set() == domains:
                return host
        return matches[0] if matches else None

    def upsert_route(self, route: ProxyRoute, force: bool = False) -> ProxyHost:
        """Create the route, or leave/replace the existing hosts sharing any domain.

        The API only offers whole-object replacement for proxy hosts, so the
        forced path deletes every overlapping host and then creates one.
        """
        domains = route.domain_set()
        if not force:
            existing = self.find_route(domains)
            if existing is not None:
                return existing
        else:
            for host in self.find_routes(domains):
                self._request("DELETE", f"/nginx/proxy-hosts/{host.id}")
                db.log_event("INFO", f"Replacing proxy host {sorted(host.domain_set())}.", namespace=self.namespace)

        payload = ProxyHostPayload.from_route(route).model_dump()
        data = self._request("POST", "/nginx/proxy-hosts", json=payload)
        host = ProxyHost.model_validate(data)
        db.log_event(
            "INFO",
            f"Proxy host {', '.join(route.domain_names)} -> {route.forward_host}:{route.forward_port}",
            namespace=self.namespace,
        )
        return host

    def delete_routes(self, domains: frozenset[str]) -> int:
        hosts = self.find_routes(domains)
        for host in hosts:
            self._request("DELETE", f"/nginx/proxy-hosts/{host.id}")
        return len(hosts)

    # --- certificates -----------------------------------------------------

    def list_certificates(self) -> list[Certificate]:
        data = self._request("GET", "/nginx/certificates") or []
        return [Certificate.model_validate(x) for x in data]

    def resolve_certificate(self, domains: list[str], name: str, key_material: KeyMaterial | None = None) -> int:
        """Reuse a certificate covering every domain, else import one, else none."""
        for cert in self.list_certificates():
            if all(any(covers(cd, d) for cd in cert.domain_names) for d in domains):
                return cert.id

        if key_material is None:
            return NO_CERTIFICATE

        for cert in self.list_certificates():
            if cert.nice_name == name and cert.provider == "other":
                # Imported by an earlier run whose upload did not finish.
                cert_id = cert.id
                break
        else:
            created = self._request("POST", "/nginx/certificates", json=CertificateCreate(nice_name=name).model_dump())
            cert_id = Certificate.model_validate(created).id

        self._request(
            "POST",
            f"/nginx/certificates/{cert_id}/upload",
            files={
                "certificate": ("fullchain.pem", key_material.certificate),
                "certificate_key": ("privkey.pem", key_material.certificate_key),
            },
        )
        db.log_event("INFO", f"Imported certificate '{name}' (id {cert_id}).", namespace=self.namespace)
        return cert_id

    # --- batch ------------------------------------------------------------

    def publish(
        self,
        routes: dict[str, ProxyRoute],
        force: bool = False,
        cert_name: str | None = None,
        key_material: KeyMaterial | None = None,
    ) -> list[StepResult]:
        """Upsert every route; one route failing never stops the others."""
        results: list[StepResult] = []
        for service, route in routes.items():
            try:
                if route.certificate_id == NO_CERTIFICATE and (cert_name or key_material):
                    cert_id = self.resolve_certificate(route.domain_names, cert_name or route.domain_names[0], key_material)
                    route = route.model_copy(update={"certificate_id": cert_id})
                host = self.upsert_route(route, force=force)
                results.append(StepResult("route", OK, f"proxy host #{host.id}", service=service))
            except (ProxyApiError, ValidationError) as e:
                db.log_event("ERROR", f"Route failed: {e}", service_name=service, namespace=self.namespace)
                results.append(StepResult("route", SOFT_FAIL, str(e), service=service))
        return results
