"""Local sandbox provider.

In-process platform implementing every capability the engine needs:
resource CRUD, fleet member operations, a health signal and a metric
source. State can optionally be persisted to a JSON file so successive CLI
runs see the same "infrastructure".

Referential integrity is enforced the way a real platform would: creating a
resource that points at a missing physical id fails, and deleting a
resource that something else still points at fails.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .base import Member, MetricSample, NotFound, ProviderError, ResourceNotEmpty

logger = logging.getLogger(__name__)

# Physical id prefixes per kind
ID_PREFIXES: dict[str, str] = {
    "network": "net",
    "subnet": "subnet",
    "route_table": "rtb",
    "security_group": "sg",
    "launch_spec": "lt",
    "fleet": "fleet",
    "load_balancer": "lb",
    "target_group": "tg",
    "listener": "lsn",
    "bucket": "bkt",
    "scaling_policy": "pol",
    "metric_alarm": "alm",
}

LOCAL_STATE_VERSION = 1


def _new_id(kind: str) -> str:
    prefix = ID_PREFIXES.get(kind, "res")
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# Attribute keys holding physical ids of other resources
LINK_KEYS = frozenset({"fleet", "policy"})


def _linked_ids(attributes: dict[str, Any]) -> list[str]:
    linked: list[str] = []
    for key, value in attributes.items():
        if not (key in LINK_KEYS or key.endswith(("_id", "_ids"))):
            continue
        if isinstance(value, str):
            linked.append(value)
        elif isinstance(value, list):
            linked.extend(item for item in value if isinstance(item, str))
    return linked


@dataclass
class LocalResource:
    """A resource held by the sandbox."""

    physical_id: str
    kind: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    objects: dict[str, str] = field(default_factory=dict)  # bucket contents
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


class LocalProvider:
    """Thread-safe in-process platform."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._resources: dict[str, LocalResource] = {}
        self._members: dict[str, Member] = {}
        self._registrations: dict[str, set[str]] = {}
        self._health: dict[str, bool] = {}
        self._samples: list[MetricSample] = []
        if path is not None and path.exists():
            self._load()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        assert self._path is not None
        data = json.loads(self._path.read_text(encoding="utf-8"))
        if data.get("version") != LOCAL_STATE_VERSION:
            raise ProviderError(
                f"Unsupported local provider state version {data.get('version')} in {self._path}"
            )
        self._resources = {
            pid: LocalResource(**raw) for pid, raw in data.get("resources", {}).items()
        }
        self._members = {mid: Member(**raw) for mid, raw in data.get("members", {}).items()}
        self._registrations = {
            tg: set(members) for tg, members in data.get("registrations", {}).items()
        }
        self._health = dict(data.get("health", {}))

    def _save(self) -> None:
        if self._path is None:
            return
        data = {
            "version": LOCAL_STATE_VERSION,
            "resources": {pid: vars(res) for pid, res in self._resources.items()},
            "members": {mid: vars(member) for mid, member in self._members.items()},
            "registrations": {tg: sorted(m) for tg, m in self._registrations.items()},
            "health": self._health,
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self._path)

    # -------------------------------------------------------------------------
    # Resource CRUD
    # -------------------------------------------------------------------------

    def _check_targets_exist(self, attributes: dict[str, Any]) -> None:
        prefixes = tuple(f"{p}-" for p in ID_PREFIXES.values())
        for value in _linked_ids(attributes):
            if value.startswith(prefixes) and value not in self._resources:
                raise ProviderError(f"Referenced resource does not exist: {value}")

    def _get(self, kind: str, physical_id: str) -> LocalResource:
        resource = self._resources.get(physical_id)
        if resource is None or resource.kind != kind:
            raise NotFound(f"{kind} {physical_id} not found")
        return resource

    def _outputs(self, resource: LocalResource) -> dict[str, Any]:
        outputs = copy.deepcopy(resource.attributes)
        outputs["id"] = resource.physical_id
        outputs["status"] = "available"
        if resource.kind == "load_balancer":
            outputs["dns_name"] = f"{resource.name}-{resource.physical_id[3:11]}.lb.local"
        elif resource.kind == "bucket":
            outputs["arn"] = f"arn:local:bucket:::{resource.attributes.get('bucket_name')}"
        elif resource.kind == "fleet":
            outputs["member_ids"] = sorted(
                m.member_id for m in self._members.values() if m.fleet_id == resource.physical_id
            )
        return outputs

    def create(self, kind: str, name: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        with self._lock:
            self._check_targets_exist(attributes)
            if kind == "bucket":
                bucket_name = attributes.get("bucket_name")
                for other in self._resources.values():
                    if other.kind == "bucket" and other.attributes.get("bucket_name") == bucket_name:
                        raise ProviderError(f"Bucket name already in use: {bucket_name}")
            resource = LocalResource(
                physical_id=_new_id(kind),
                kind=kind,
                name=name,
                attributes=copy.deepcopy(attributes),
            )
            self._resources[resource.physical_id] = resource
            if kind == "fleet":
                self._scale_fleet(resource)
            self._save()
            logger.debug("Created %s %s (%s)", kind, name, resource.physical_id)
            return resource.physical_id, self._outputs(resource)

    def read(self, kind: str, physical_id: str) -> dict[str, Any]:
        with self._lock:
            return self._outputs(self._get(kind, physical_id))

    def update(self, kind: str, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            resource = self._get(kind, physical_id)
            self._check_targets_exist(attributes)
            resource.attributes = copy.deepcopy(attributes)
            if kind == "fleet":
                self._scale_fleet(resource)
            self._save()
            return self._outputs(resource)

    def delete(self, kind: str, physical_id: str, force: bool = False) -> None:
        with self._lock:
            resource = self._get(kind, physical_id)
            for other in self._resources.values():
                if other.physical_id != physical_id and physical_id in _linked_ids(
                    other.attributes
                ):
                    raise ProviderError(
                        f"{kind} {physical_id} is still in use by {other.kind} {other.physical_id}"
                    )
            if kind == "launch_spec" and any(
                m.launch_spec_id == physical_id for m in self._members.values()
            ):
                raise ProviderError(f"launch_spec {physical_id} is still used by fleet members")
            if resource.objects:
                if not force:
                    raise ResourceNotEmpty(
                        f"{kind} {physical_id} contains {len(resource.objects)} objects"
                    )
                logger.info(
                    "Emptying container before delete",
                    extra={"physical_id": physical_id, "object_count": len(resource.objects)},
                )
                resource.objects.clear()
            if kind == "fleet":
                for member in [m for m in self._members.values() if m.fleet_id == physical_id]:
                    self._remove_member(member.member_id)
            del self._resources[physical_id]
            self._registrations.pop(physical_id, None)
            self._save()

    # -------------------------------------------------------------------------
    # Container contents
    # -------------------------------------------------------------------------

    def put_object(self, bucket_id: str, key: str, body: str) -> None:
        with self._lock:
            self._get("bucket", bucket_id).objects[key] = body
            self._save()

    def list_objects(self, bucket_id: str) -> list[str]:
        with self._lock:
            return sorted(self._get("bucket", bucket_id).objects)

    # -------------------------------------------------------------------------
    # Fleet members
    # -------------------------------------------------------------------------

    def _scale_fleet(self, fleet: LocalResource) -> None:
        desired = int(fleet.attributes.get("desired_capacity", 0))
        members = sorted(
            (m for m in self._members.values() if m.fleet_id == fleet.physical_id),
            key=lambda m: m.member_id,
        )
        while len(members) < desired:
            members.append(
                self._add_member(fleet.physical_id, fleet.attributes["launch_spec_id"])
            )
        # Scale in removes the newest members last-in-first-out
        while len(members) > desired:
            self._remove_member(members.pop().member_id)

    def _add_member(self, fleet_id: str, launch_spec_id: str) -> Member:
        member = Member(
            member_id=f"i-{uuid.uuid4().hex[:12]}",
            fleet_id=fleet_id,
            launch_spec_id=launch_spec_id,
        )
        self._members[member.member_id] = member
        self._health.setdefault(member.member_id, True)
        fleet = self._resources.get(fleet_id)
        if fleet is not None:
            for tg in fleet.attributes.get("target_group_ids", []):
                self._registrations.setdefault(tg, set()).add(member.member_id)
        return member

    def _remove_member(self, member_id: str) -> None:
        self._members.pop(member_id, None)
        self._health.pop(member_id, None)
        for registered in self._registrations.values():
            registered.discard(member_id)

    def list_members(self, fleet_id: str) -> list[Member]:
        with self._lock:
            return sorted(
                (m for m in self._members.values() if m.fleet_id == fleet_id),
                key=lambda m: m.member_id,
            )

    def launch_member(self, fleet_id: str, launch_spec_id: str) -> Member:
        with self._lock:
            self._get("fleet", fleet_id)
            self._get("launch_spec", launch_spec_id)
            member = Member(
                member_id=f"i-{uuid.uuid4().hex[:12]}",
                fleet_id=fleet_id,
                launch_spec_id=launch_spec_id,
            )
            self._members[member.member_id] = member
            self._health.setdefault(member.member_id, True)
            self._save()
            return member

    def terminate_member(self, member_id: str) -> None:
        with self._lock:
            if member_id not in self._members:
                raise NotFound(f"member {member_id} not found")
            self._remove_member(member_id)
            self._save()

    def register_target(self, target_group_id: str, member_id: str) -> None:
        with self._lock:
            self._get("target_group", target_group_id)
            self._registrations.setdefault(target_group_id, set()).add(member_id)
            self._save()

    def deregister_target(self, target_group_id: str, member_id: str) -> None:
        with self._lock:
            self._registrations.get(target_group_id, set()).discard(member_id)
            self._save()

    def registered_targets(self, target_group_id: str) -> list[str]:
        with self._lock:
            return sorted(self._registrations.get(target_group_id, set()))

    # -------------------------------------------------------------------------
    # Health signal
    # -------------------------------------------------------------------------

    def set_health(self, member_id: str, healthy: bool) -> None:
        with self._lock:
            self._health[member_id] = healthy

    def is_healthy(self, member_id: str) -> bool:
        with self._lock:
            return member_id in self._members and self._health.get(member_id, False)

    # -------------------------------------------------------------------------
    # Metric source
    # -------------------------------------------------------------------------

    def push_sample(self, alarm: str, value: float, timestamp: datetime | None = None) -> None:
        """Queue a metric sample for an alarm (by logical name)."""
        with self._lock:
            self._samples.append(
                MetricSample(alarm=alarm, timestamp=timestamp or datetime.now(UTC), value=value)
            )

    def fetch_samples(self) -> list[MetricSample]:
        """Drain queued samples."""
        with self._lock:
            samples, self._samples = self._samples, []
            return samples
