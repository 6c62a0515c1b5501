"""
Local composition descriptor (``docker-compose.yaml``).

Only the parts this project relies on are modelled: images or build
contexts, environment, published ports, volumes, health checks and
``depends_on`` conditions.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml

from appdeploy.errors import CompositionError

SERVICE_STARTED = "service_started"
SERVICE_HEALTHY = "service_healthy"
SERVICE_COMPLETED = "service_completed_successfully"
CONDITIONS = (SERVICE_STARTED, SERVICE_HEALTHY, SERVICE_COMPLETED)

DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 0.000001}
DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|us|m|s)")


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """``"1m30s"`` -> ``90.0`` seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip()
    parts = DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"Invalid duration: {value!r}")
    return sum(float(number) * DURATION_UNITS[unit] for number, unit in parts)


@dataclass
class PortMapping:
    host: Optional[int]
    container: int
    protocol: str = "tcp"

    @classmethod
    def parse(cls, value: Union[str, int]) -> "PortMapping":
        if isinstance(value, int):
            return cls(None, value)

        text, _, protocol = str(value).partition("/")
        pieces = text.split(":")
        # "ip:host:container" keeps only the ports
        if len(pieces) == 1:
            return cls(None, int(pieces[0]), protocol or "tcp")
        return cls(int(pieces[-2]) if pieces[-2] else None, int(pieces[-1]), protocol or "tcp")


@dataclass
class HealthCheck:
    test: List[str]
    interval: Optional[float] = None
    timeout: Optional[float] = None
    retries: Optional[int] = None
    start_period: Optional[float] = None

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "HealthCheck":
        test = data.get("test") or []
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        return cls(
            test=list(test),
            interval=parse_duration(data.get("interval")),
            timeout=parse_duration(data.get("timeout")),
            retries=data.get("retries"),
            start_period=parse_duration(data.get("start_period")),
        )

    @property
    def disabled(self) -> bool:
        return not self.test or self.test[0] == "NONE"

    @property
    def command(self) -> List[str]:
        if self.test and self.test[0] in ("CMD", "CMD-SHELL"):
            return self.test[1:]
        return self.test


@dataclass
class Dependency:
    service: str
    condition: str = SERVICE_STARTED


@dataclass
class Service:
    name: str
    image: Optional[str] = None
    build: Optional[Dict[str, Any]] = None
    container_name: Optional[str] = None
    restart: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    ports: List[PortMapping] = field(default_factory=list)
    volumes: List[str] = field(default_factory=list)
    depends_on: List[Dependency] = field(default_factory=list)
    healthcheck: Optional[HealthCheck] = None

    @property
    def named_volumes(self) -> List[str]:
        names = []
        for spec in self.volumes:
            source = spec.split(":", 1)[0] if ":" in spec else None
            if source and not source.startswith((".", "/", "~")):
                names.append(source)
        return names


@dataclass
class ComposeFile:
    services: Dict[str, Service]
    volumes: Dict[str, Any] = field(default_factory=dict)
    version: Optional[str] = None
    path: Optional[str] = None

    def service(self, name: str) -> Service:
        return self.services[name]


def _environment(value) -> Dict[str, str]:
    if not value:
        return {}
    if isinstance(value, dict):
        return {k: "" if v is None else str(v) for k, v in value.items()}
    env = {}
    for item in value:
        key, _, val = str(item).partition("=")
        env[key] = val
    return env


def _depends_on(value) -> List[Dependency]:
    if not value:
        return []
    if isinstance(value, list):
        return [Dependency(name) for name in value]
    return [Dependency(name, (spec or {}).get("condition", SERVICE_STARTED)) for name, spec in value.items()]


def _build(value) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, str):
        return {"context": value}
    return dict(value)


def parse_compose(data: Dict[str, Any], path: Optional[str] = None) -> ComposeFile:
    if not isinstance(data, dict) or not isinstance(data.get("services"), dict):
        raise CompositionError(["no 'services' mapping"], path)

    services = {}
    problems = []
    for name, spec in data["services"].items():
        spec = spec or {}
        if not isinstance(spec, dict):
            problems.append(f"service '{name}' must be a mapping, got {type(spec).__name__}")
            continue
        try:
            services[name] = Service(
                name=name,
                image=spec.get("image"),
                build=_build(spec.get("build")),
                container_name=spec.get("container_name"),
                restart=spec.get("restart"),
                environment=_environment(spec.get("environment")),
                ports=[PortMapping.parse(p) for p in spec.get("ports") or []],
                volumes=[str(v) for v in spec.get("volumes") or []],
                depends_on=_depends_on(spec.get("depends_on")),
                healthcheck=HealthCheck.parse(spec["healthcheck"]) if spec.get("healthcheck") else None,
            )
        except ValueError as e:
            problems.append(f"service '{name}': {e}")

    if problems:
        raise CompositionError(problems, path)

    return ComposeFile(
        services=services,
        volumes=dict(data.get("volumes") or {}),
        version=data.get("version"),
        path=path,
    )


def load_compose(path: str) -> ComposeFile:
    with open(path, "r") as file:
        try:
            data = yaml.safe_load(file)
        except yaml.YAMLError as e:
            raise CompositionError([f"not valid YAML: {e}"], path)
    return parse_compose(data, path)


def _find_cycle(compose: ComposeFile) -> Optional[List[str]]:
    visiting, done = [], set()

    def visit(name):
        if name in done or name not in compose.services:
            return None
        if name in visiting:
            return visiting[visiting.index(name):] + [name]
        visiting.append(name)
        for dep in compose.services[name].depends_on:
            cycle = visit(dep.service)
            if cycle:
                return cycle
        visiting.pop()
        done.add(name)
        return None

    for name in compose.services:
        cycle = visit(name)
        if cycle:
            return cycle
    return None


def validate(compose: ComposeFile) -> None:
    problems = []
    published = {}

    for name, service in compose.services.items():
        if not service.image and not service.build:
            problems.append(f"service '{name}' has neither image nor build")

        for dep in service.depends_on:
            target = compose.services.get(dep.service)
            if target is None:
                problems.append(f"service '{name}' depends on undeclared service '{dep.service}'")
            elif dep.condition not in CONDITIONS:
                problems.append(f"service '{name}' uses unknown condition '{dep.condition}'")
            elif dep.condition == SERVICE_HEALTHY and (target.healthcheck is None or target.healthcheck.disabled):
                problems.append(
                    f"service '{name}' waits for '{dep.service}' to be healthy but it has no health check"
                )

        for volume in service.named_volumes:
            if volume not in compose.volumes:
                problems.append(f"service '{name}' uses undeclared volume '{volume}'")

        for port in service.ports:
            if port.host is None:
                continue
            key = (port.host, port.protocol)
            if key in published:
                problems.append(
                    f"host port {port.host}/{port.protocol} is published by both '{published[key]}' and '{name}'"
                )
            published[key] = name

    cycle = _find_cycle(compose)
    if cycle:
        problems.append("dependency cycle: " + " -> ".join(cycle))

    if problems:
        raise CompositionError(problems, compose.path)


def startup_order(compose: ComposeFile) -> List[str]:
    """Services ordered so that each one comes after everything it depends on."""
    validate(compose)
    order, seen = [], set()

    def visit(name):
        if name in seen:
            return
        seen.add(name)
        for dep in compose.services[name].depends_on:
            visit(dep.service)
        order.append(name)

    for name in compose.services:
        visit(name)
    return order
