from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, SecretStr, field_validator, model_validator

DEFAULT_TAG = "latest"


class ImageReference(BaseModel):
    """Registry-qualified pointer to a container image."""

    registry: Optional[str] = Field(None, description="Registry host, e.g. registry.gitlab.com")
    repository: str = Field(..., min_length=1, description="Repository path inside the registry")
    tag: str = Field(DEFAULT_TAG, min_length=1)

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "ImageReference":
        text = text.strip()
        if not text:
            raise ValueError("empty image reference")
        if "@" in text:
            raise ValueError(f"digest references are not supported: {text}")

        registry = None
        parts = text.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            parts = parts[1:]

        tag = DEFAULT_TAG
        last = parts[-1]
        if ":" in last:
            last, tag = last.rsplit(":", 1)
            parts[-1] = last

        return cls(registry=registry, repository="/".join(parts), tag=tag)

    @property
    def name(self) -> str:
        """Image name without the tag, the form `docker push` expects."""
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    def with_tag(self, tag: str) -> "ImageReference":
        return self.model_copy(update={"tag": tag})

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


class PortMapping(BaseModel):
    host_port: int = Field(..., ge=1, le=65535, description="Published port on the host")
    container_port: int = Field(..., ge=1, le=65535, description="Internal container port")
    protocol: Literal["tcp", "udp"] = "tcp"
    host_ip: Optional[str] = Field(None, description="Host interface to bind, all interfaces when unset")

    @classmethod
    def parse(cls, value: "str | int") -> "PortMapping":
        text = str(value).strip()
        protocol = "tcp"
        if "/" in text:
            text, protocol = text.split("/", 1)

        host_ip = None
        pieces = text.split(":")
        if len(pieces) == 1:
            host = container = pieces[0]
        elif len(pieces) == 2:
            host, container = pieces
        else:
            # "ip:host:container", the ip may itself be a bracketed IPv6 address
            host_ip = ":".join(pieces[:-2]).strip("[]") or None
            host, container = pieces[-2], pieces[-1]

        try:
            return cls(host_port=int(host), container_port=int(container), protocol=protocol, host_ip=host_ip)
        except ValueError as e:
            raise ValueError(f"invalid port mapping '{value}': {e}") from e

    @property
    def container_key(self) -> str:
        """Key used by the docker API, e.g. '80/tcp'."""
        return f"{self.container_port}/{self.protocol}"

    def __str__(self) -> str:
        binding = f"{self.host_ip}:{self.host_port}" if self.host_ip else str(self.host_port)
        return f"{binding}:{self.container_port}/{self.protocol}"


class BuildSpec(BaseModel):
    context: str = Field(..., min_length=1)
    dockerfile: str = "Dockerfile"


class ServiceDefinition(BaseModel):
    name: str = Field(..., pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
    image: ImageReference
    ports: list[PortMapping] = Field(default_factory=list)
    build: Optional[BuildSpec] = None
    environment: dict[str, str] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)

    @field_validator("image", mode="before")
    @classmethod
    def parse_image(cls, v):
        if isinstance(v, str):
            return ImageReference.parse(v)
        return v

    @field_validator("ports", mode="before")
    @classmethod
    def parse_ports(cls, v):
        if v is None:
            return []
        return [PortMapping.parse(p) if isinstance(p, (str, int)) else p for p in v]

    @field_validator("build", mode="before")
    @classmethod
    def parse_build(cls, v):
        if isinstance(v, str):
            return {"context": v}
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def parse_environment(cls, v):
        if v is None:
            return {}
        if isinstance(v, list):
            env = {}
            for item in v:
                key, _, value = str(item).partition("=")
                env[key] = value
            return env
        return {k: "" if val is None else str(val) for k, val in v.items()}

    @field_validator("depends_on", mode="before")
    @classmethod
    def parse_depends_on(cls, v):
        if v is None:
            return []
        if isinstance(v, dict):
            return list(v)
        return v

    def published_ports(self) -> dict[str, "int | tuple[str, int]"]:
        """Port bindings in the shape `containers.run(ports=...)` accepts."""
        return {p.container_key: (p.host_ip, p.host_port) if p.host_ip else p.host_port for p in self.ports}


class OrchestrationDescriptor(BaseModel):
    """The declarative multi-service deployment definition."""

    project: str = Field(
        "shipyard", pattern=r"^[a-z0-9][a-z0-9_-]*$", validation_alias=AliasChoices("project", "name")
    )
    services: dict[str, ServiceDefinition]

    @model_validator(mode="before")
    @classmethod
    def name_services(cls, data):
        if isinstance(data, dict) and isinstance(data.get("services"), dict):
            services = {}
            for name, body in data["services"].items():
                if isinstance(body, dict):
                    body = {"name": name, **body}
                services[name] = body
            data = {**data, "services": services}
        return data

    @model_validator(mode="after")
    def check_consistency(self):
        if not self.services:
            raise ValueError("descriptor declares no services")

        seen_ports: dict[tuple[int, str], str] = {}
        for service in self.services.values():
            for dep in service.depends_on:
                if dep not in self.services:
                    raise ValueError(f"service '{service.name}' depends on unknown service '{dep}'")
            for port in service.ports:
                key = (port.host_port, port.protocol)
                if key in seen_ports:
                    raise ValueError(
                        f"host port {port.host_port}/{port.protocol} published by both "
                        f"'{seen_ports[key]}' and '{service.name}'"
                    )
                seen_ports[key] = service.name

        self.startup_order()
        return self

    def startup_order(self) -> list[ServiceDefinition]:
        """Services with their dependencies first, otherwise in declaration order."""
        ordered: list[ServiceDefinition] = []
        done: set[str] = set()
        visiting: set[str] = set()

        def visit(name: str):
            if name in done:
                return
            if name in visiting:
                raise ValueError(f"dependency cycle involving '{name}'")
            visiting.add(name)
            for dep in self.services[name].depends_on:
                visit(dep)
            visiting.discard(name)
            done.add(name)
            ordered.append(self.services[name])

        for name in self.services:
            visit(name)
        return ordered

    def buildable(self) -> list[ServiceDefinition]:
        return [s for s in self.services.values() if s.build is not None]


class RegistryCredentials(BaseModel):
    registry: Optional[str] = None
    username: str
    password: SecretStr

    def auth_config(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password.get_secret_value()}


class RouteRule(BaseModel):
    """A path-prefix matcher and the target it resolves to."""

    prefix: str = Field(..., pattern=r"^/")
    target: Literal["static", "upstream"]
    upstream: Optional[str] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_upstream(self):
        if self.target == "upstream" and not self.upstream:
            raise ValueError(f"route '{self.prefix}' forwards upstream but names no address")
        return self

    def matches(self, path: str) -> bool:
        return path.startswith(self.prefix)


class PipelineState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    PUSHING = "pushing"
    AWAITING_APPROVAL = "awaiting-approval"
    DEPLOYING = "deploying"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.IDLE: {PipelineState.BUILDING},
    PipelineState.BUILDING: {PipelineState.PUSHING, PipelineState.FAILED},
    PipelineState.PUSHING: {PipelineState.AWAITING_APPROVAL, PipelineState.DEPLOYING, PipelineState.FAILED},
    PipelineState.AWAITING_APPROVAL: {PipelineState.DEPLOYING},
    PipelineState.DEPLOYING: {PipelineState.DONE, PipelineState.FAILED},
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobResult(BaseModel):
    component: str
    step: str = Field(..., description="build, push, or a deploy step name")
    status: Literal["success", "failed"]
    detail: str = ""
    started_at: datetime = Field(default_factory=_now)
    finished_at: datetime = Field(default_factory=_now)

    @property
    def ok(self) -> bool:
        return self.status == "success"
