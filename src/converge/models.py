"""Pydantic models for desired-state resources with validation.

These models provide:
1. Type-safe YAML parsing of desired-state documents
2. Per-kind attribute schemas, validated at the boundary (fail fast, fail loudly)
3. The reference syntax that produces dependency edges between resources

A reference is written ``${<logical-name>.<attribute>}`` anywhere inside a
string attribute value. ``${name.id}`` resolves to the provider-issued
physical identifier, any other attribute to the provider-reported value.
"""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# =============================================================================
# References
# =============================================================================

VALID_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]{0,62}$"
REFERENCE_PATTERN = re.compile(r"\$\{([A-Za-z][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_]*)\}")

# Attribute name that resolves to the physical identifier
ID_ATTRIBUTE = "id"


def is_reference(value: Any) -> bool:
    """Return True if value contains at least one reference."""
    return isinstance(value, str) and REFERENCE_PATTERN.search(value) is not None


def extract_references(value: Any) -> set[str]:
    """Collect the logical names referenced anywhere inside value."""
    if isinstance(value, str):
        return {match.group(1) for match in REFERENCE_PATTERN.finditer(value)}
    if isinstance(value, dict):
        names: set[str] = set()
        for item in value.values():
            names |= extract_references(item)
        return names
    if isinstance(value, list | tuple):
        names = set()
        for item in value:
            names |= extract_references(item)
        return names
    return set()


def referenced_name(value: Any) -> str | None:
    """Return the logical name if value is exactly one reference, else None."""
    if not isinstance(value, str):
        return None
    match = REFERENCE_PATTERN.fullmatch(value.strip())
    return match.group(1) if match else None


def substitute_references(value: Any, lookup: Callable[[str, str], Any]) -> Any:
    """Replace references inside value using lookup(name, attribute).

    A string consisting of a single reference takes the looked-up value
    as-is (so lists and numbers survive); references embedded in longer
    strings are interpolated as text.
    """
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            return lookup(whole.group(1), whole.group(2))
        return REFERENCE_PATTERN.sub(lambda m: str(lookup(m.group(1), m.group(2))), value)
    if isinstance(value, dict):
        return {key: substitute_references(item, lookup) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_references(item, lookup) for item in value]
    return value


def _validate_cidr(value: str) -> str:
    if is_reference(value):
        return value
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError as e:
        raise ValueError(f"must be in CIDR notation (e.g., 10.0.0.0/16): {value}") from e
    return value


# =============================================================================
# Resource kinds
# =============================================================================


class ResourceKind(str, Enum):
    """Supported resource kinds."""

    NETWORK = "network"
    SUBNET = "subnet"
    ROUTE_TABLE = "route_table"
    SECURITY_GROUP = "security_group"
    LAUNCH_SPEC = "launch_spec"
    FLEET = "fleet"
    LOAD_BALANCER = "load_balancer"
    TARGET_GROUP = "target_group"
    LISTENER = "listener"
    BUCKET = "bucket"
    SCALING_POLICY = "scaling_policy"
    METRIC_ALARM = "metric_alarm"


class ScalingDirection(str, Enum):
    """Direction of a scaling policy."""

    UP = "up"
    DOWN = "down"


class ComparisonOperator(str, Enum):
    """Comparison used by a metric alarm."""

    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUAL = ">="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUAL = "<="

    def holds(self, value: float, threshold: float) -> bool:
        """Evaluate ``value <op> threshold``."""
        match self:
            case ComparisonOperator.GREATER_THAN:
                return value > threshold
            case ComparisonOperator.GREATER_THAN_OR_EQUAL:
                return value >= threshold
            case ComparisonOperator.LESS_THAN:
                return value < threshold
            case ComparisonOperator.LESS_THAN_OR_EQUAL:
                return value <= threshold
        raise ValueError(f"Unsupported comparison: {self}")


# =============================================================================
# Network
# =============================================================================


class NetworkAttributes(BaseModel):
    """Virtual network."""

    model_config = {"extra": "forbid"}

    cidr_block: str
    enable_dns: bool = True
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)


class SubnetAttributes(BaseModel):
    """Subnet inside a network."""

    model_config = {"extra": "forbid"}

    network_id: str
    cidr_block: str
    availability_zone: str | None = None
    public: bool = False
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("cidr_block")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)


class Route(BaseModel):
    """A single route entry."""

    model_config = {"extra": "forbid"}

    destination: str
    gateway: str

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        return _validate_cidr(v)


class RouteTableAttributes(BaseModel):
    """Route table with its subnet associations."""

    model_config = {"extra": "forbid"}

    network_id: str
    routes: list[Route] = Field(default_factory=list)
    subnet_ids: list[str] = Field(default_factory=list)


class TrafficRule(BaseModel):
    """An ingress or egress rule.

    ``allowed_sources`` is required and must list every permitted CIDR
    explicitly; there is no implicit "anywhere" default.
    """

    model_config = {"extra": "forbid"}

    protocol: Literal["tcp", "udp", "icmp", "all"] = "tcp"
    from_port: Annotated[int, Field(ge=0, le=65535)]
    to_port: Annotated[int, Field(ge=0, le=65535)]
    allowed_sources: Annotated[list[str], Field(min_length=1)]
    description: str | None = None

    @field_validator("allowed_sources")
    @classmethod
    def validate_sources(cls, v: list[str]) -> list[str]:
        return [_validate_cidr(source) for source in v]

    @model_validator(mode="after")
    def validate_port_range(self) -> TrafficRule:
        if self.from_port > self.to_port:
            raise ValueError(f"from_port {self.from_port} exceeds to_port {self.to_port}")
        return self


class SecurityGroupAttributes(BaseModel):
    """Security group bound to a network."""

    model_config = {"extra": "forbid"}

    network_id: str
    description: str = ""
    ingress: list[TrafficRule] = Field(default_factory=list)
    egress: list[TrafficRule] = Field(default_factory=list)


# =============================================================================
# Compute
# =============================================================================


class LaunchSpecAttributes(BaseModel):
    """Immutable template fleet members are created from."""

    model_config = {"extra": "forbid"}

    image: Annotated[str, Field(min_length=1)]
    instance_size: Annotated[str, Field(min_length=1)]
    subnet_id: str | None = None
    security_group_ids: list[str] = Field(default_factory=list)
    startup_payload: str | None = None
    key_name: str | None = None


class FleetAttributes(BaseModel):
    """Horizontally scalable group of homogeneous members."""

    model_config = {"extra": "forbid"}

    launch_spec_id: str
    subnet_ids: list[str] = Field(default_factory=list)
    target_group_ids: list[str] = Field(default_factory=list)
    min_size: Annotated[int, Field(ge=0)]
    max_size: Annotated[int, Field(ge=0)]
    desired_capacity: Annotated[int, Field(ge=0)]
    min_healthy_percentage: Annotated[int, Field(ge=0, le=100)] = 50

    @model_validator(mode="after")
    def validate_bounds(self) -> FleetAttributes:
        if not (self.min_size <= self.desired_capacity <= self.max_size):
            raise ValueError(
                f"fleet bounds require min_size <= desired_capacity <= max_size, got "
                f"{self.min_size} <= {self.desired_capacity} <= {self.max_size}"
            )
        return self


# =============================================================================
# Load balancing
# =============================================================================


class LoadBalancerAttributes(BaseModel):
    """Load balancer fronting one or more target groups."""

    model_config = {"extra": "forbid"}

    subnet_ids: list[str] = Field(default_factory=list)
    security_group_ids: list[str] = Field(default_factory=list)
    internal: bool = False


class HealthCheckConfig(BaseModel):
    """Target health check used to gate rolling replacements."""

    model_config = {"extra": "forbid"}

    path: str = "/"
    interval_seconds: Annotated[float, Field(gt=0)] = 10
    timeout_seconds: Annotated[float, Field(gt=0)] = 300
    healthy_threshold: Annotated[int, Field(ge=1)] = 2
    unhealthy_threshold: Annotated[int, Field(ge=1)] = 3


class TargetGroupAttributes(BaseModel):
    """Group of registered fleet members with a health check."""

    model_config = {"extra": "forbid"}

    network_id: str
    port: Annotated[int, Field(ge=1, le=65535)]
    protocol: Literal["HTTP", "HTTPS", "TCP"] = "HTTP"
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)


class ListenerAttributes(BaseModel):
    """Listener forwarding balancer traffic to a target group."""

    model_config = {"extra": "forbid"}

    load_balancer_id: str
    target_group_id: str
    port: Annotated[int, Field(ge=1, le=65535)]
    protocol: Literal["HTTP", "HTTPS", "TCP"] = "HTTP"


# =============================================================================
# Storage
# =============================================================================


class BucketAttributes(BaseModel):
    """Object storage container."""

    model_config = {"extra": "forbid"}

    bucket_name: Annotated[str, Field(min_length=3, max_length=63)]
    versioning: bool = False
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("bucket_name")
    @classmethod
    def validate_bucket_name(cls, v: str) -> str:
        if not is_reference(v) and not re.match(r"^[a-z0-9][a-z0-9.-]+[a-z0-9]$", v):
            raise ValueError("bucket_name must be lowercase letters, digits, dots and hyphens")
        return v


# =============================================================================
# Autoscaling
# =============================================================================


class ScalingPolicyAttributes(BaseModel):
    """Capacity adjustment bound to one fleet."""

    model_config = {"extra": "forbid"}

    fleet: str
    direction: ScalingDirection
    adjustment: Annotated[int, Field(ge=1)]
    cooldown_seconds: Annotated[float, Field(ge=0)] = 300

    @field_validator("fleet")
    @classmethod
    def validate_fleet_reference(cls, v: str) -> str:
        if referenced_name(v) is None:
            raise ValueError("fleet must be a reference such as ${web.id}")
        return v


class MetricAlarmAttributes(BaseModel):
    """Threshold alarm that dispatches a scaling policy."""

    model_config = {"extra": "forbid"}

    metric_name: Annotated[str, Field(min_length=1)]
    comparison: ComparisonOperator
    threshold: float
    evaluation_periods: Annotated[int, Field(ge=1)] = 1
    period_seconds: Annotated[float, Field(gt=0)] = 60
    policy: str

    @field_validator("policy")
    @classmethod
    def validate_policy_reference(cls, v: str) -> str:
        if referenced_name(v) is None:
            raise ValueError("policy must be a reference such as ${scale-up.id}")
        return v


KIND_SCHEMAS: dict[ResourceKind, type[BaseModel]] = {
    ResourceKind.NETWORK: NetworkAttributes,
    ResourceKind.SUBNET: SubnetAttributes,
    ResourceKind.ROUTE_TABLE: RouteTableAttributes,
    ResourceKind.SECURITY_GROUP: SecurityGroupAttributes,
    ResourceKind.LAUNCH_SPEC: LaunchSpecAttributes,
    ResourceKind.FLEET: FleetAttributes,
    ResourceKind.LOAD_BALANCER: LoadBalancerAttributes,
    ResourceKind.TARGET_GROUP: TargetGroupAttributes,
    ResourceKind.LISTENER: ListenerAttributes,
    ResourceKind.BUCKET: BucketAttributes,
    ResourceKind.SCALING_POLICY: ScalingPolicyAttributes,
    ResourceKind.METRIC_ALARM: MetricAlarmAttributes,
}

# Attributes that cannot be changed in place; a change forces replacement.
# Launch specifications are immutable templates, so every attribute counts.
IMMUTABLE_ATTRIBUTES: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.NETWORK: frozenset({"cidr_block"}),
    ResourceKind.SUBNET: frozenset({"network_id", "cidr_block", "availability_zone"}),
    ResourceKind.ROUTE_TABLE: frozenset({"network_id"}),
    ResourceKind.SECURITY_GROUP: frozenset({"network_id"}),
    ResourceKind.LAUNCH_SPEC: frozenset(LaunchSpecAttributes.model_fields),
    ResourceKind.FLEET: frozenset(),
    ResourceKind.LOAD_BALANCER: frozenset({"internal"}),
    ResourceKind.TARGET_GROUP: frozenset({"network_id", "port", "protocol"}),
    ResourceKind.LISTENER: frozenset({"load_balancer_id", "port"}),
    ResourceKind.BUCKET: frozenset({"bucket_name"}),
    ResourceKind.SCALING_POLICY: frozenset({"fleet", "direction"}),
    ResourceKind.METRIC_ALARM: frozenset(),
}

# Kinds whose delete may fail with ResourceNotEmpty unless forced
CONTAINER_KINDS: frozenset[ResourceKind] = frozenset({ResourceKind.BUCKET})


def immutable_attributes(kind: ResourceKind | str) -> frozenset[str]:
    """Get the immutable attribute names for a kind."""
    return IMMUTABLE_ATTRIBUTES.get(ResourceKind(kind), frozenset())


# =============================================================================
# Resources
# =============================================================================


class Lifecycle(BaseModel):
    """Per-resource lifecycle policy."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    force_destroy: bool = Field(False, alias="forceDestroy")
    create_before_destroy: bool = Field(False, alias="createBeforeDestroy")


class Resource(BaseModel):
    """A desired resource: identity, attributes and dependencies.

    ``attributes`` is stored in its validated, fully-defaulted form so that
    two declarations meaning the same thing compare equal.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: ResourceKind
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_NAME_PATTERN, v):
            raise ValueError(f"name must match pattern {VALID_NAME_PATTERN}: {v}")
        return v

    @model_validator(mode="after")
    def validate_attributes(self) -> Resource:
        schema = KIND_SCHEMAS[self.kind]
        validated = schema.model_validate(self.attributes)
        self.attributes = validated.model_dump(mode="json")
        return self

    @property
    def identity(self) -> tuple[str, str]:
        """(kind, logical name)."""
        return (self.kind.value, self.name)

    @property
    def references(self) -> set[str]:
        """Logical names referenced from attribute values."""
        return extract_references(self.attributes)

    @property
    def dependencies(self) -> set[str]:
        """References plus explicit depends_on entries."""
        return self.references | set(self.depends_on)

    def typed_attributes(self) -> BaseModel:
        """Attributes parsed back into the kind's schema."""
        return KIND_SCHEMAS[self.kind].model_validate(self.attributes)

    def attributes_referencing(self, name: str) -> set[str]:
        """Top-level attribute keys whose value references ``name``."""
        return {
            key for key, value in self.attributes.items() if name in extract_references(value)
        }


class InfrastructureDocument(BaseModel):
    """Top-level desired-state document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    api_version: Literal["converge/v1"] = Field("converge/v1", alias="apiVersion")
    resources: list[Resource] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_names(self) -> InfrastructureDocument:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for resource in self.resources:
            if resource.name in seen:
                duplicates.add(resource.name)
            seen.add(resource.name)
        if duplicates:
            raise ValueError(f"duplicate resource names: {sorted(duplicates)}")
        return self


def index_by_name(resources: Iterable[Resource]) -> dict[str, Resource]:
    """Map logical name to resource, rejecting duplicates."""
    indexed: dict[str, Resource] = {}
    for resource in resources:
        if resource.name in indexed:
            raise ValueError(f"duplicate resource name: {resource.name}")
        indexed[resource.name] = resource
    return indexed
