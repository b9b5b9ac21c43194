from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


# Nginx Proxy Manager's "no certificate" id.
NO_CERTIFICATE = 0


class TokenRequest(BaseModel):
    identity: str
    secret: str


class TokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str
    expires: str | None = None


class ProxyRoute(BaseModel):
    """Desired route: identity is the set of domain names."""

    domain_names: list[str] = Field(..., min_length=1, description="Host names served by this route")
    forward_host: str = Field(..., description="Upstream container name or host")
    forward_port: int = Field(80, ge=1, le=65535)
    forward_scheme: str = Field("http", pattern="^https?$")
    certificate_id: int = Field(NO_CERTIFICATE, ge=0)
    ssl_forced: bool = False
    allow_websocket_upgrade: bool = False
    block_exploits: bool = True

    def domain_set(self) -> frozenset[str]:
        return frozenset(d.lower() for d in self.domain_names)


class ProxyHostPayload(BaseModel):
    """Body for ``POST /nginx/proxy-hosts`` (whole-object; there is no partial update)."""

    domain_names: list[str]
    forward_scheme: str = "http"
    forward_host: str
    forward_port: int
    access_list_id: int = 0
    certificate_id: int = NO_CERTIFICATE
    ssl_forced: bool = False
    http2_support: bool = False
    hsts_enabled: bool = False
    hsts_subdomains: bool = False
    caching_enabled: bool = False
    block_exploits: bool = True
    allow_websocket_upgrade: bool = False
    advanced_config: str = ""
    meta: dict = Field(default_factory=dict)
    locations: list[dict] = Field(default_factory=list)

    @classmethod
    def from_route(cls, route: ProxyRoute) -> "ProxyHostPayload":
        has_cert = route.certificate_id != NO_CERTIFICATE
        return cls(
            domain_names=list(route.domain_names),
            forward_scheme=route.forward_scheme,
            forward_host=route.forward_host,
            forward_port=route.forward_port,
            certificate_id=route.certificate_id,
            # Forcing TLS without a certificate would lock the host out.
            ssl_forced=route.ssl_forced and has_cert,
            http2_support=has_cert,
            block_exploits=route.block_exploits,
            allow_websocket_upgrade=route.allow_websocket_upgrade,
        )


class ProxyHost(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    domain_names: list[str]
    forward_host: str = ""
    forward_port: int = 0
    forward_scheme: str = "http"
    certificate_id: int | str = NO_CERTIFICATE
    ssl_forced: bool = False
    allow_websocket_upgrade: bool = False

    def domain_set(self) -> frozenset[str]:
        return frozenset(d.lower() for d in self.domain_names)


class CertificateCreate(BaseModel):
    provider: str = "other"
    nice_name: str


class Certificate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    nice_name: str = ""
    provider: str = ""
    domain_names: list[str] = Field(default_factory=list)

    def domain_set(self) -> frozenset[str]:
        return frozenset(d.lower() for d in self.domain_names)
