"""Reconciliation of SecurityCheck resources against the pods of a namespace."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from securitycheck.types import Condition, ConditionStatus, Scheme, SecurityCheck

logger = logging.getLogger(__name__)

_REQUEUE_INTERVAL = timedelta(minutes=2)
_READY = "Ready"
_WARNING = "Warning"


class NotFoundError(LookupError):
    """Raised when a requested resource does not exist."""


@dataclass(frozen=True)
class NamespacedName:
    """Namespace and name identifying a namespaced resource."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class Request:
    """A request to reconcile one resource."""

    namespaced_name: NamespacedName


@dataclass(frozen=True)
class Result:
    """Outcome of a reconciliation: when, if at all, to run it again."""

    requeue_after: Optional[timedelta] = None


@dataclass
class SecurityContext:
    """The security-related settings of a container."""

    run_as_user: Optional[int] = None
    privileged: Optional[bool] = None


@dataclass
class Container:
    """A container of a pod."""

    name: str
    security_context: Optional[SecurityContext] = None


@dataclass
class Pod:
    """A pod with its containers."""

    name: str
    namespace: str
    containers: list[Container] = field(default_factory=list)


@dataclass(frozen=True)
class Event:
    """An event recorded against a resource."""

    object: Any
    event_type: str
    reason: str
    message: str


class EventRecorder:
    """Keeps the events recorded against resources, in order."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        self.events.append(Event(obj, event_type, reason, message))


def _key(check: SecurityCheck) -> NamespacedName:
    return NamespacedName(check.metadata.namespace, check.metadata.name)


class InMemoryClient:
    """A store of SecurityCheck resources and pods."""

    def __init__(self) -> None:
        self._checks: dict[NamespacedName, SecurityCheck] = {}
        self._pods: list[Pod] = []

    def create(self, check: SecurityCheck) -> None:
        if not check.metadata.name:
            raise ValueError("resource name may not be empty")
        key = _key(check)
        if key in self._checks:
            raise ValueError(f"securitycheck {key} already exists")
        self._checks[key] = copy.deepcopy(check)

    def get(self, name: NamespacedName) -> SecurityCheck:
        try:
            return copy.deepcopy(self._checks[name])
        except KeyError:
            raise NotFoundError(f"securitycheck {name} not found") from None

    def delete(self, name: NamespacedName) -> None:
        try:
            del self._checks[name]
        except KeyError:
            raise NotFoundError(f"securitycheck {name} not found") from None

    def add_pod(self, pod: Pod) -> None:
        self._pods.append(copy.deepcopy(pod))

    def list_pods(self, namespace: str) -> list[Pod]:
        """Pods of ``namespace``; an empty namespace means all of them."""
        return [
            copy.deepcopy(pod)
            for pod in self._pods
            if not namespace or pod.namespace == namespace
        ]

    def update_status(self, check: SecurityCheck) -> None:
        key = _key(check)
        stored = self._checks.get(key)
        if stored is None:
            raise NotFoundError(f"securitycheck {key} not found")
        stored.status = copy.deepcopy(check.status)


def runs_as_root(pod: Pod) -> bool:
    """True if any container explicitly runs as UID 0."""
    return any(
        c.security_context is not None and c.security_context.run_as_user == 0
        for c in pod.containers
    )


def missing_security_context(pod: Pod) -> bool:
    """True if any container has no security context at all."""
    return any(c.security_context is None for c in pod.containers)


def is_privileged(pod: Pod) -> bool:
    """True if any container runs in privileged mode."""
    return any(
        c.security_context is not None and c.security_context.privileged is True
        for c in pod.containers
    )


_RULES = {
    "no-root-user": (runs_as_root, "Pod is running as root user (UID 0)"),
    "required-security-context": (
        missing_security_context,
        "Pod container is missing security context",
    ),
    "no-privileged": (is_privileged, "Pod is running in privileged mode"),
}


def update_conditions(check: SecurityCheck, violations: int, now: datetime) -> None:
    """Set the Ready condition of ``check`` from the number of violations."""
    if violations == 0:
        ready = Condition(
            type=_READY,
            status=ConditionStatus.TRUE,
            last_transition_time=now,
            reason="NoViolations",
            message="All pods comply with security policies",
        )
    else:
        ready = Condition(
            type=_READY,
            status=ConditionStatus.FALSE,
            last_transition_time=now,
            reason="SecurityViolations",
            message=f"Found {violations} security violations",
        )

    conditions = check.status.conditions
    for position, condition in enumerate(conditions):
        if condition.type == _READY:
            conditions[position] = ready
            return
    conditions.append(ready)


class SecurityCheckReconciler:
    """Brings the status of SecurityCheck resources up to date."""

    def __init__(
        self,
        client: InMemoryClient,
        recorder: Optional[EventRecorder] = None,
        scheme: Optional[Scheme] = None,
    ) -> None:
        self.client = client
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.scheme = scheme

    def reconcile(self, request: Request) -> Result:
        try:
            check = self.client.get(request.namespaced_name)
        except NotFoundError:
            logger.info("SecurityCheck resource not found. Ignoring since object must be deleted")
            return Result()

        total_pods, violations = self.check_pods_in_namespace(check)

        now = datetime.now(timezone.utc)
        check.status.total_pods = total_pods
        check.status.violations_count = violations
        check.status.last_check_time = now
        update_conditions(check, violations, now)

        self.client.update_status(check)

        logger.info(
            "SecurityCheck reconciled successfully namespace=%s totalPods=%d violations=%d",
            check.spec.target_namespace,
            total_pods,
            violations,
        )
        return Result(requeue_after=_REQUEUE_INTERVAL)

    def check_pods_in_namespace(self, check: SecurityCheck) -> tuple[int, int]:
        """Return the number of pods checked and the violations found."""
        namespace = check.spec.target_namespace
        try:
            pods = self.client.list_pods(namespace)
        except Exception as exc:
            raise RuntimeError(f"failed to list pods in namespace {namespace}: {exc}") from exc

        logger.info(
            "Checking pods for security violations namespace=%s podCount=%d",
            namespace,
            len(pods),
        )

        violations = 0
        for pod in pods:
            found = self.check_pod_security(pod, check)
            violations += found
            if found:
                logger.info(
                    "Security violations found pod=%s namespace=%s violations=%d",
                    pod.name,
                    pod.namespace,
                    found,
                )
        return len(pods), violations

    def check_pod_security(self, pod: Pod, check: SecurityCheck) -> int:
        """Apply the enabled rules of ``check`` to ``pod``; return violations."""
        violations = 0
        for rule in check.spec.rules:
            if not rule.is_enabled():
                continue
            entry = _RULES.get(rule.name)
            if entry is None:
                continue
            predicate, message = entry
            if predicate(pod):
                violations += 1
                self._record_violation(pod, check, rule.name, message)
        return violations

    def _record_violation(
        self, pod: Pod, check: SecurityCheck, rule_name: str, message: str
    ) -> None:
        event_message = (
            f"Pod {pod.namespace}/{pod.name} violated rule '{rule_name}': {message}"
        )
        self.recorder.event(check, _WARNING, "SecurityViolation", event_message)
        logger.info(
            "Security violation recorded pod=%s namespace=%s rule=%s message=%s",
            pod.name,
            pod.namespace,
            rule_name,
            message,
        )