"""Service URL resolution for IDE containers.

Every container exposes four services behind path-based routing:
``{base}/{prefix}/{containerId}``. Remote mode routes through the shared
ingress; local mode points at a developer's local agent.
"""

import ipaddress
from typing import Dict, NamedTuple, Optional

from ...config.ide import EndpointsConfig
from ...models.container import EnvironmentMode, ServiceUrls

ROUTER_PRIORITY = 10


class ServiceRoute(NamedTuple):
    key: str
    path: str
    port: int


def is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
        return True
    except ValueError:
        return False


def is_plain_http_domain(domain: str) -> bool:
    """Localhost and bare IPs cannot get TLS certificates from the ingress."""
    host = domain.split(":", 1)[0] if domain.count(":") == 1 else domain
    return host == "localhost" or host.endswith(".localhost") or is_ip_address(host)


class EndpointResolver:
    """Builds service URLs and reverse-proxy routing labels."""

    def __init__(self, config: Optional[EndpointsConfig] = None):
        self.config = config or EndpointsConfig()

    @property
    def routes(self) -> Dict[str, ServiceRoute]:
        cfg = self.config
        return {
            "terminal": ServiceRoute("terminal", cfg.terminal_path, cfg.terminal_port),
            "vnc": ServiceRoute("vnc", cfg.vnc_path, cfg.vnc_port),
            "web_server": ServiceRoute("web", cfg.web_server_path, cfg.web_server_port),
            "code_server": ServiceRoute(
                "code", cfg.code_server_path, cfg.code_server_port
            ),
        }

    def remote_base_url(self) -> str:
        if self.config.ide_remote_base_url:
            return self.config.ide_remote_base_url.rstrip("/")
        domain = self.config.ide_domain
        scheme = "http" if is_plain_http_domain(domain) else "https"
        return f"{scheme}://{domain}"

    def local_base_url(self) -> str:
        return self.config.ide_local_base_url.rstrip("/")

    def base_url(self, environment_mode: EnvironmentMode) -> str:
        if environment_mode == EnvironmentMode.LOCAL:
            return self.local_base_url()
        return self.remote_base_url()

    def resolve_endpoints(
        self, container_id: str, environment_mode: EnvironmentMode
    ) -> ServiceUrls:
        base = self.base_url(environment_mode)
        urls = {
            field: f"{base}/{route.path.strip('/')}/{container_id}"
            for field, route in self.routes.items()
        }
        return ServiceUrls(**urls)

    def routing_labels(self, container_id: str) -> Dict[str, str]:
        """Traefik labels routing each service prefix to its port."""
        domain = self.config.ide_domain
        use_tls = not is_plain_http_domain(domain)
        entrypoints = "web,websecure" if use_tls else "web"

        labels = {"traefik.enable": "true"}
        for route in self.routes.values():
            name = f"{route.key}-{container_id}"
            prefix = f"/{route.path.strip('/')}/{container_id}"
            router = f"traefik.http.routers.{name}"
            labels[f"{router}.rule"] = (
                f"PathPrefix(`{prefix}`) || PathPrefix(`{prefix}/`)"
            )
            labels[f"{router}.entrypoints"] = entrypoints
            labels[f"{router}.priority"] = str(ROUTER_PRIORITY)
            labels[f"{router}.service"] = name
            labels[f"{router}.middlewares"] = f"{name}-strip"
            labels[f"traefik.http.services.{name}.loadbalancer.server.port"] = str(
                route.port
            )
            labels[f"traefik.http.middlewares.{name}-strip.stripprefix.prefixes"] = (
                prefix
            )
            if use_tls:
                labels[f"{router}.tls.certresolver"] = "letsencrypt"

        labels["ide.domain"] = domain
        labels["ide.container.id"] = container_id
        return labels
