from datetime import datetime, timedelta, timezone

import pytest

from securitycheck.controller import (
    Container,
    EventRecorder,
    InMemoryClient,
    NamespacedName,
    NotFoundError,
    Pod,
    Request,
    Result,
    SecurityCheckReconciler,
    SecurityContext,
    is_privileged,
    missing_security_context,
    runs_as_root,
    update_conditions,
)
from securitycheck.types import (
    Condition,
    ConditionStatus,
    ObjectMeta,
    Scheme,
    SecurityCheck,
    SecurityCheckSpec,
    SecurityRule,
    add_to_scheme,
)

RESOURCE = NamespacedName(namespace="default", name="test-resource")
NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)
ALL_RULES = ["no-root-user", "required-security-context", "no-privileged"]


@pytest.fixture
def client():
    store = InMemoryClient()
    store.create(SecurityCheck(metadata=ObjectMeta(name="test-resource", namespace="default")))
    return store


def _check(rules, target="apps"):
    return SecurityCheck(
        metadata=ObjectMeta(name="test-resource", namespace="default"),
        spec=SecurityCheckSpec(target_namespace=target, rules=rules),
    )


def _root_pod(name="root", namespace="apps"):
    return Pod(name, namespace, [Container("c", SecurityContext(run_as_user=0))])


def test_reconcile_created_resource(client):
    scheme = Scheme()
    add_to_scheme(scheme)
    reconciler = SecurityCheckReconciler(client, scheme=scheme)
    result = reconciler.reconcile(Request(RESOURCE))
    assert result == Result(requeue_after=timedelta(minutes=2))

    stored = client.get(RESOURCE)
    assert stored.status.total_pods == 0
    assert stored.status.violations_count == 0
    assert stored.status.conditions[0].status is ConditionStatus.TRUE
    assert stored.status.conditions[0].reason == "NoViolations"

    client.delete(RESOURCE)
    with pytest.raises(NotFoundError):
        client.get(RESOURCE)


def test_reconcile_missing_resource_is_ignored():
    reconciler = SecurityCheckReconciler(InMemoryClient())
    assert reconciler.reconcile(Request(RESOURCE)) == Result()


def test_reconcile_counts_violations_and_records_events():
    store = InMemoryClient()
    store.create(_check([SecurityRule(name) for name in ALL_RULES]))
    store.add_pod(_root_pod())
    store.add_pod(Pod("bare", "apps", [Container("c")]))
    store.add_pod(Pod("ok", "apps", [Container("c", SecurityContext(run_as_user=1000))]))
    store.add_pod(_root_pod(name="elsewhere", namespace="other"))
    recorder = EventRecorder()

    SecurityCheckReconciler(store, recorder).reconcile(Request(RESOURCE))

    status = store.get(RESOURCE).status
    assert status.total_pods == 3
    assert status.violations_count == 2
    assert status.last_check_time is not None
    assert status.conditions[0].status is ConditionStatus.FALSE
    assert status.conditions[0].message == "Found 2 security violations"
    messages = [e.message for e in recorder.events]
    assert messages == [
        "Pod apps/root violated rule 'no-root-user': Pod is running as root user (UID 0)",
        "Pod apps/bare violated rule 'required-security-context': "
        "Pod container is missing security context",
    ]
    assert all(e.event_type == "Warning" and e.reason == "SecurityViolation" for e in recorder.events)


def test_empty_target_namespace_checks_all_pods():
    store = InMemoryClient()
    store.create(_check([SecurityRule("no-root-user")], target=""))
    store.add_pod(_root_pod(namespace="a"))
    store.add_pod(_root_pod(namespace="b"))
    SecurityCheckReconciler(store).reconcile(Request(RESOURCE))
    assert store.get(RESOURCE).status.violations_count == 2


def test_disabled_and_unknown_rules_are_skipped():
    reconciler = SecurityCheckReconciler(InMemoryClient())
    check = _check([SecurityRule("no-root-user", enabled=False), SecurityRule("no-host-network")])
    assert reconciler.check_pod_security(_root_pod(), check) == 0
    assert reconciler.recorder.events == []


def test_explicitly_enabled_rule_applies():
    reconciler = SecurityCheckReconciler(InMemoryClient())
    check = _check([SecurityRule("no-privileged", enabled=True)])
    pod = Pod("p", "apps", [Container("c", SecurityContext(privileged=True))])
    assert reconciler.check_pod_security(pod, check) == 1


def test_one_violation_per_rule_per_pod():
    reconciler = SecurityCheckReconciler(InMemoryClient())
    pod = Pod("p", "apps", [Container("a"), Container("b", SecurityContext(0, True))])
    check = _check([SecurityRule(name) for name in ALL_RULES])
    assert reconciler.check_pod_security(pod, check) == 3


def test_check_pods_in_namespace_wraps_list_errors():
    class BrokenClient:
        def list_pods(self, namespace):
            raise OSError("unreachable")

    reconciler = SecurityCheckReconciler(BrokenClient())
    with pytest.raises(RuntimeError, match="failed to list pods in namespace apps"):
        reconciler.check_pods_in_namespace(_check([]))


def test_reconcile_propagates_get_errors():
    class BrokenClient:
        def get(self, name):
            raise OSError("unreachable")

    with pytest.raises(OSError):
        SecurityCheckReconciler(BrokenClient()).reconcile(Request(RESOURCE))


@pytest.mark.parametrize(
    "context, expected",
    [(None, False), (SecurityContext(), False), (SecurityContext(run_as_user=1000), False),
     (SecurityContext(run_as_user=0), True)],
)
def test_runs_as_root(context, expected):
    assert runs_as_root(Pod("p", "ns", [Container("c", context)])) is expected


@pytest.mark.parametrize(
    "context, expected",
    [(None, False), (SecurityContext(privileged=False), False),
     (SecurityContext(privileged=True), True)],
)
def test_is_privileged(context, expected):
    assert is_privileged(Pod("p", "ns", [Container("c", context)])) is expected


def test_missing_security_context():
    assert missing_security_context(Pod("p", "ns", [Container("a", SecurityContext()), Container("b")]))
    assert not missing_security_context(Pod("p", "ns", [Container("a", SecurityContext())]))
    assert not missing_security_context(Pod("p", "ns", []))


def test_update_conditions_replaces_ready_and_keeps_others():
    check = _check([])
    other = Condition("Degraded", ConditionStatus.UNKNOWN, NOW)
    check.status.conditions = [other, Condition("Ready", ConditionStatus.TRUE, NOW)]
    update_conditions(check, 3, NOW)
    assert len(check.status.conditions) == 2
    assert check.status.conditions[0] == other
    assert check.status.conditions[1].reason == "SecurityViolations"
    assert check.status.conditions[1].message == "Found 3 security violations"


def test_update_conditions_appends_when_absent():
    check = _check([])
    update_conditions(check, 0, NOW)
    assert check.status.conditions == [
        Condition("Ready", ConditionStatus.TRUE, NOW, "NoViolations",
                  "All pods comply with security policies")
    ]


def test_client_rejects_duplicates(client):
    with pytest.raises(ValueError):
        client.create(SecurityCheck(metadata=ObjectMeta(name="test-resource", namespace="default")))


def test_client_delete_missing():
    with pytest.raises(NotFoundError):
        InMemoryClient().delete(RESOURCE)


def test_client_update_status_missing():
    with pytest.raises(NotFoundError):
        InMemoryClient().update_status(_check([]))


def test_client_get_returns_copy(client):
    fetched = client.get(RESOURCE)
    fetched.spec.target_namespace = "changed"
    assert client.get(RESOURCE).spec.target_namespace == ""


def test_update_status_leaves_spec_alone(client):
    changed = client.get(RESOURCE)
    changed.spec.target_namespace = "changed"
    changed.status.total_pods = 5
    client.update_status(changed)
    stored = client.get(RESOURCE)
    assert stored.spec.target_namespace == ""
    assert stored.status.total_pods == 5