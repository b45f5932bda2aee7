"""Deployment plan: which services go to which hosts in this run."""

from dataclasses import dataclass, field

from ..config import ConvoyConfig, filter_by_patterns


@dataclass
class ServicePlan:
    """One service and the hosts it will be deployed to."""

    name: str
    hosts: list[str]
    builds: bool = False
    proxied: bool = False
    retain: int = 3
    image: str | None = None


@dataclass
class DeploymentPlan:
    """Services x hosts selected for a deployment."""

    project: str
    services: list[ServicePlan] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.services

    @property
    def hosts(self) -> list[str]:
        """Unique target hosts, in first-seen order."""
        hosts: list[str] = []
        for service in self.services:
            for host in service.hosts:
                if host not in hosts:
                    hosts.append(host)
        return hosts

    @property
    def proxy_hosts(self) -> list[str]:
        """Hosts serving at least one proxied service."""
        return [h for h in self.hosts if any(s.proxied and h in s.hosts for s in self.services)]

    @property
    def needs_build(self) -> bool:
        return any(s.builds for s in self.services)

    @property
    def retain(self) -> int:
        return max((s.retain for s in self.services), default=0)


def build_plan(
    config: ConvoyConfig,
    service_patterns: str | None = None,
    host_patterns: str | None = None,
) -> DeploymentPlan:
    """Select services and hosts matching the given wildcard patterns.

    Services left without hosts after host filtering are dropped.
    """
    plan = DeploymentPlan(project=config.project.name)
    for name in filter_by_patterns(list(config.services), service_patterns):
        service = config.services[name]
        hosts = filter_by_patterns(service.hosts, host_patterns)
        if not hosts:
            continue
        plan.services.append(
            ServicePlan(
                name=name,
                hosts=hosts,
                builds=service.requires_build(),
                proxied=service.proxy.enabled,
                retain=service.retain,
                image=service.image,
            )
        )
    return plan
