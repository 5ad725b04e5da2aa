"""Resource types of the security.k8s-operator.pyar.bz/v1 API group."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class GroupVersion:
    """An API group together with one of its versions."""

    group: str
    version: str

    def api_version(self) -> str:
        """Return the value used in the ``apiVersion`` field."""
        return f"{self.group}/{self.version}" if self.group else self.version


GROUP_VERSION = GroupVersion("security.k8s-operator.pyar.bz", "v1")


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(text: str) -> datetime:
    try:
        moment = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
    except ValueError as exc:
        raise ValueError(f"invalid timestamp {text!r}") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _optional_time(text: Optional[str]) -> Optional[datetime]:
    return _parse_time(text) if text else None


def _require(data: dict[str, Any], key: str) -> Any:
    if key not in data:
        raise ValueError(f"missing required field {key!r}")
    return data[key]


def _check_header(data: dict[str, Any], kind: str) -> None:
    api_version = data.get("apiVersion")
    if api_version and api_version != GROUP_VERSION.api_version():
        raise ValueError(f"unexpected apiVersion {api_version!r}")
    found_kind = data.get("kind")
    if found_kind and found_kind != kind:
        raise ValueError(f"unexpected kind {found_kind!r}, expected {kind!r}")


def _non_empty(**fields: Any) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value}


class ConditionStatus(str, Enum):
    """Status value of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """One observation about the state of a resource."""

    type: str
    status: ConditionStatus
    last_transition_time: datetime
    reason: str = ""
    message: str = ""
    observed_generation: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "status": self.status.value}
        data.update(_non_empty(observedGeneration=self.observed_generation))
        data["lastTransitionTime"] = _format_time(self.last_transition_time)
        data["reason"] = self.reason
        data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Condition":
        return cls(
            type=_require(data, "type"),
            status=ConditionStatus(_require(data, "status")),
            last_transition_time=_parse_time(_require(data, "lastTransitionTime")),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            observed_generation=int(data.get("observedGeneration", 0)),
        )


@dataclass
class ObjectMeta:
    """Identifying metadata of a resource."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""
    creation_timestamp: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        created = self.creation_timestamp
        return _non_empty(
            name=self.name,
            namespace=self.namespace,
            resourceVersion=self.resource_version,
            creationTimestamp=_format_time(created) if created is not None else None,
            labels=dict(self.labels),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ObjectMeta":
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            labels=dict(data.get("labels") or {}),
            resource_version=data.get("resourceVersion", ""),
            creation_timestamp=_optional_time(data.get("creationTimestamp")),
        )


@dataclass
class SecurityRule:
    """A single named security rule; active unless explicitly disabled."""

    name: str
    enabled: Optional[bool] = None

    def is_enabled(self) -> bool:
        return self.enabled is None or self.enabled

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.enabled is not None:
            data["enabled"] = self.enabled
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityRule":
        enabled = data.get("enabled")
        return cls(name=_require(data, "name"), enabled=None if enabled is None else bool(enabled))


@dataclass
class SecurityCheckSpec:
    """Desired state: which namespace to watch and which rules apply."""

    target_namespace: str = ""
    rules: list[SecurityRule] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return _non_empty(
            targetNamespace=self.target_namespace,
            rules=[rule.to_dict() for rule in self.rules],
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityCheckSpec":
        return cls(
            target_namespace=data.get("targetNamespace", ""),
            rules=[SecurityRule.from_dict(item) for item in data.get("rules") or []],
        )


@dataclass
class SecurityCheckStatus:
    """Observed state: pod and violation counts from the last check."""

    total_pods: int = 0
    violations_count: int = 0
    last_check_time: Optional[datetime] = None
    conditions: list[Condition] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        checked = self.last_check_time
        return _non_empty(
            totalPods=self.total_pods,
            violationsCount=self.violations_count,
            lastCheckTime=_format_time(checked) if checked is not None else None,
            conditions=[c.to_dict() for c in self.conditions],
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityCheckStatus":
        return cls(
            total_pods=int(data.get("totalPods", 0)),
            violations_count=int(data.get("violationsCount", 0)),
            last_check_time=_optional_time(data.get("lastCheckTime")),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )


@dataclass
class SecurityCheck:
    """A SecurityCheck resource."""

    KIND = "SecurityCheck"

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SecurityCheckSpec = field(default_factory=SecurityCheckSpec)
    status: SecurityCheckStatus = field(default_factory=SecurityCheckStatus)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"apiVersion": GROUP_VERSION.api_version(), "kind": self.KIND}
        if self.metadata != ObjectMeta():
            data["metadata"] = self.metadata.to_dict()
        data["spec"] = self.spec.to_dict()
        if self.status != SecurityCheckStatus():
            data["status"] = self.status.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityCheck":
        _check_header(data, cls.KIND)
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            spec=SecurityCheckSpec.from_dict(data.get("spec") or {}),
            status=SecurityCheckStatus.from_dict(data.get("status") or {}),
        )


@dataclass
class SecurityCheckList:
    """A list of SecurityCheck resources."""

    KIND = "SecurityCheckList"

    items: list[SecurityCheck] = field(default_factory=list)
    resource_version: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": GROUP_VERSION.api_version(),
            "kind": self.KIND,
            "metadata": _non_empty(resourceVersion=self.resource_version),
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityCheckList":
        _check_header(data, cls.KIND)
        return cls(
            items=[SecurityCheck.from_dict(item) for item in data.get("items") or []],
            resource_version=(data.get("metadata") or {}).get("resourceVersion", ""),
        )


class Scheme:
    """Registry mapping (apiVersion, kind) pairs to Python types."""

    def __init__(self) -> None:
        self._types: dict[tuple[str, str], type] = {}

    def register(self, group_version: GroupVersion, kind: str, cls: type) -> None:
        key = (group_version.api_version(), kind)
        existing = self._types.setdefault(key, cls)
        if existing is not cls:
            raise ValueError(
                f"kind {kind!r} of {key[0]!r} is already registered to {existing.__name__}"
            )

    def lookup(self, api_version: str, kind: str) -> type:
        try:
            return self._types[(api_version, kind)]
        except KeyError:
            raise KeyError(f"no kind {kind!r} is registered for version {api_version!r}") from None


def add_to_scheme(scheme: Scheme) -> None:
    """Register the types of this API group in ``scheme``."""
    scheme.register(GROUP_VERSION, SecurityCheck.KIND, SecurityCheck)
    scheme.register(GROUP_VERSION, SecurityCheckList.KIND, SecurityCheckList)