"""Read-only reference data: branches, service prefixes, staff.

These come from external registries (branch admin, identity provider). The
engine only reads them. A JSON seed file can provide them for a standalone
deployment; otherwise `default_reference_data()` gives one demo branch with the
four counters the branch ships with.

Seed file layout:

    {
      "branches": [{"id": "B01", "name": "Main", "timezone": "Asia/Ho_Chi_Minh"}],
      "staff": [{"id": "u1", "full_name": "An Tran", "email": "...", "role": "TELLER", "branch_id": "B01"}],
      "counters": [{"id": "1", "name": "Counter 01", "branch_id": "B01",
                    "service_tags": ["DEPOSIT", "WITHDRAWAL"], "status": "ONLINE"}],
      "prefixes": {"DEPOSIT": "A"}
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .codec import parse_counter_status, parse_service_type
from .errors import NotFoundError, ValidationError
from .models import Branch, CounterStatus, ServiceType, StaffMember, StaffRole

DEFAULT_PREFIXES: dict[ServiceType, str] = {
    ServiceType.DEPOSIT: "A",
    ServiceType.WITHDRAWAL: "W",
    ServiceType.LOAN: "L",
    ServiceType.CONSULTATION: "C",
    ServiceType.VIP: "V",
}


class BranchRegistry:
    def __init__(self, branches: list[Branch] | None = None) -> None:
        self._branches: dict[str, Branch] = {b.id: b for b in branches or []}

    def get(self, branch_id: str) -> Branch:
        branch = self._branches.get(branch_id)
        if branch is None:
            raise ValidationError("unknown branch", entity="branch", entity_id=branch_id)
        return branch

    def require_active(self, branch_id: str | None) -> None:
        """Tickets may be issued without a branch; a named branch must exist and be active."""
        if branch_id is None:
            return
        if not self.get(branch_id).active:
            raise ValidationError("branch is inactive", entity="branch", entity_id=branch_id)

    def timezone(self, branch_id: str | None) -> tzinfo:
        if branch_id is None or branch_id not in self._branches:
            return timezone.utc
        return _zone(self._branches[branch_id].timezone)

    def all(self) -> list[Branch]:
        return list(self._branches.values())


class ServiceCatalog:
    def __init__(self, prefixes: dict[ServiceType, str] | None = None) -> None:
        self._prefixes = dict(DEFAULT_PREFIXES)
        if prefixes:
            self._prefixes.update(prefixes)

    def prefix(self, service_type: ServiceType) -> str:
        try:
            return self._prefixes[service_type]
        except KeyError:
            raise ValidationError(f"no prefix for service {service_type.name}") from None


class StaffDirectory:
    def __init__(self, staff: list[StaffMember] | None = None) -> None:
        self._staff: dict[str, StaffMember] = {s.id: s for s in staff or []}

    def get(self, user_id: str) -> StaffMember:
        member = self._staff.get(user_id)
        if member is None:
            raise NotFoundError("unknown user", entity="user", entity_id=user_id)
        return member

    def add(self, member: StaffMember) -> None:
        self._staff[member.id] = member


@dataclass(frozen=True)
class CounterSeed:
    id: str
    name: str
    branch_id: str | None
    service_tags: frozenset[ServiceType]
    status: CounterStatus = CounterStatus.OFFLINE


@dataclass
class ReferenceData:
    branches: list[Branch] = field(default_factory=list)
    staff: list[StaffMember] = field(default_factory=list)
    counters: list[CounterSeed] = field(default_factory=list)
    prefixes: dict[ServiceType, str] = field(default_factory=dict)


def default_reference_data() -> ReferenceData:
    branch = Branch(id="B01", name="Main Branch")
    tags = [
        ("1", "Counter 01", CounterStatus.ONLINE, {ServiceType.DEPOSIT, ServiceType.WITHDRAWAL}),
        ("2", "Counter 02", CounterStatus.ONLINE, {ServiceType.DEPOSIT, ServiceType.WITHDRAWAL}),
        ("3", "Counter 03", CounterStatus.PAUSED, {ServiceType.LOAN, ServiceType.CONSULTATION}),
        ("4", "VIP Counter", CounterStatus.ONLINE, {ServiceType.VIP, ServiceType.DEPOSIT, ServiceType.LOAN}),
    ]
    return ReferenceData(
        branches=[branch],
        staff=[
            StaffMember(id="admin", full_name="Branch Admin", role=StaffRole.ADMIN, branch_id=branch.id),
            StaffMember(id="teller1", full_name="Teller One", role=StaffRole.TELLER, branch_id=branch.id),
            StaffMember(id="teller2", full_name="Teller Two", role=StaffRole.TELLER, branch_id=branch.id),
        ],
        counters=[
            CounterSeed(id=cid, name=name, branch_id=branch.id, service_tags=frozenset(t), status=st)
            for cid, name, st, t in tags
        ],
    )


def load_reference_data(path: str | os.PathLike[str]) -> ReferenceData:
    """Parse a seed file. Malformed content raises ValidationError."""
    try:
        with open(Path(path), "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"cannot read reference data {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("reference data must be a JSON object")

    try:
        branches = [_branch(item) for item in data.get("branches", [])]
        staff = [_staff(item) for item in data.get("staff", [])]
        counters = [_counter(item) for item in data.get("counters", [])]
        prefixes = {parse_service_type(k): str(v) for k, v in (data.get("prefixes") or {}).items()}
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"malformed reference data: {e}") from e
    return ReferenceData(branches=branches, staff=staff, counters=counters, prefixes=prefixes)


def _branch(item: dict[str, Any]) -> Branch:
    tz = str(item.get("timezone", "UTC"))
    try:
        _zone(tz)
    except ZoneInfoNotFoundError as e:
        raise ValidationError(f"unknown timezone {tz!r}") from e
    return Branch(
        id=str(item["id"]),
        name=str(item.get("name", item["id"])),
        timezone=tz,
        active=bool(item.get("active", True)),
    )


def _staff(item: dict[str, Any]) -> StaffMember:
    return StaffMember(
        id=str(item["id"]),
        full_name=str(item.get("full_name", item["id"])),
        email=item.get("email"),
        role=StaffRole(str(item.get("role", "TELLER")).upper()),
        branch_id=item.get("branch_id"),
    )


def _counter(item: dict[str, Any]) -> CounterSeed:
    return CounterSeed(
        id=str(item["id"]),
        name=str(item.get("name", item["id"])),
        branch_id=item.get("branch_id"),
        service_tags=frozenset(parse_service_type(t) for t in item.get("service_tags", [])),
        status=parse_counter_status(item.get("status", "OFFLINE")),
    )


def _zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)
