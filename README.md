# securitycheck

`securitycheck` audits pods against a small set of security rules. A
`SecurityCheck` resource names the namespace to watch and the rules to apply.
The reconciler lists the pods in that namespace and counts the violations. It
records a warning event for each violation and writes the result back into
the resource's status.

## Rules

| Rule name                   | A pod violates it when                                 |
|-----------------------------|--------------------------------------------------------|
| `no-root-user`              | any container runs with `run_as_user` set to `0`       |
| `required-security-context` | any container has no security context at all          |
| `no-privileged`             | any container has `privileged` set to `True`           |

A rule is active unless `enabled` is `False`. Rules with other names are
ignored. An empty `targetNamespace` means every pod in the store is checked.

## The SecurityCheck resource

The resource types live in `securitycheck.types`. They belong to API group
`security.k8s-operator.pyar.bz`, version `v1`, which is available as
`GROUP_VERSION`.

The JSON form of a `SecurityCheck` looks like this:

```json
{
  "apiVersion": "security.k8s-operator.pyar.bz/v1",
  "kind": "SecurityCheck",
  "metadata": {"name": "audit", "namespace": "default"},
  "spec": {
    "targetNamespace": "team-a",
    "rules": [
      {"name": "no-root-user"},
      {"name": "no-privileged"},
      {"name": "required-security-context", "enabled": false}
    ]
  }
}
```

- `SecurityCheck.from_dict` loads a resource from this form and
  `SecurityCheck.to_dict` writes it back.
- `SecurityCheckList` does the same for lists of checks.
- `from_dict` raises `ValueError` in three cases: the `apiVersion` or `kind`
  does not match, a required field is missing, or a timestamp cannot be read.
- `Scheme` maps `(apiVersion, kind)` pairs to Python types.
  `add_to_scheme(scheme)` registers both resource types.

After each reconcile, the status (`SecurityCheckStatus`) holds:

- `total_pods` (`totalPods`): how many pods were checked.
- `violations_count` (`violationsCount`): how many rule violations were found.
- `last_check_time` (`lastCheckTime`): when the check ran, in UTC.
- `conditions`: one `Ready` condition:
  - `True` with reason `NoViolations` when nothing was found;
  - otherwise `False` with reason `SecurityViolations` and the message
    `Found N security violations`.

Each violation is also recorded as a `Warning` event with reason
`SecurityViolation`. Its message has the form
`Pod <namespace>/<name> violated rule '<rule>': <detail>`.

## Using it as a library

The reconciler lives in `securitycheck.controller`.

```python
from securitycheck.controller import (
    Container, InMemoryClient, NamespacedName, Pod, Request,
    SecurityCheckReconciler, SecurityContext,
)
from securitycheck.types import ObjectMeta, SecurityCheck, SecurityCheckSpec, SecurityRule

client = InMemoryClient()
client.create(SecurityCheck(
    metadata=ObjectMeta(name="audit", namespace="default"),
    spec=SecurityCheckSpec(target_namespace="team-a",
                           rules=[SecurityRule("no-privileged")]),
))
client.add_pod(Pod("web", "team-a",
                   [Container("app", SecurityContext(privileged=True))]))

reconciler = SecurityCheckReconciler(client)
result = reconciler.reconcile(Request(NamespacedName("default", "audit")))
check = client.get(NamespacedName("default", "audit"))
print(check.status.violations_count)     # 1
print(reconciler.recorder.events[0].message)
```

`InMemoryClient` keeps checks and pods in memory:

- It hands out copies, so changes to returned objects do not reach the store
  until `update_status` is called.
- `get`, `delete` and `update_status` raise `NotFoundError` for unknown
  checks.

`reconcile` behaves as follows:

- It returns a `Result` whose `requeue_after` is two minutes.
- A request for a check that no longer exists is ignored and returns an empty
  `Result`.
- If listing pods fails, a `RuntimeError` is raised.

Events go to an `EventRecorder`, whose `events` list keeps them in order. One
is created for you if none is passed.

The pod checks are also available on their own as `runs_as_root`,
`missing_security_context` and `is_privileged`. `update_conditions(check,
violations, now)` replaces the `Ready` condition of a check, or adds one if
there is none.

## Running the manager

```
securitycheck-manager
```

This runs `securitycheck.cli.main`, which builds a `Manager` and runs it until
SIGINT or SIGTERM. A second signal exits at once. While it runs, the manager:

- reconciles the requests that are due in its queue;
- requeues each request after the delay its `Result` asks for;
- retries a failed request with growing back-off;
- counts outcomes in `reconcile_totals`;
- serves `GET /healthz` and `GET /readyz` (and `/healthz/<name>`,
  `/readyz/<name>`) over plain HTTP on the health probe address.

The options are:

- `--health-probe-bind-address` (default `:8081`; `0` or empty turns the
  probe server off)
- `--metrics-bind-address` (default `0`) and `--metrics-secure` (default
  true): accepted, see below
- `--leader-elect`: only logged, see below
- `--enable-http2`: offer `h2` as well as `http/1.1` over ALPN; by default
  only `http/1.1` is offered
- `--webhook-cert-path`, `--webhook-cert-name`, `--webhook-cert-key` and
  `--metrics-cert-path`, `--metrics-cert-name`, `--metrics-cert-key`: when a
  path is given, the certificate and key files (names default to `tls.crt`
  and `tls.key`) are loaded into a TLS context at start-up, and the manager
  exits with status 1 if they cannot be loaded
- `--zap-devel` (default true, debug logging) and `--zap-log-level`
  (`debug`, `info` or `error`)

Boolean options take an optional value such as `--metrics-secure=false`.
Every option may also be written with a single dash.

Run `securitycheck-manager --help` for the full list.

## What it does not do

- The manager does not connect to a cluster. Its store is an empty
  `InMemoryClient`, and nothing feeds it checks, pods or requests from
  outside. As a command it serves health probes and does no audits.
  Auditing is done by using the reconciler, or `Manager.enqueue` and
  `Manager.run_once`, from your own code.
- No metrics endpoint is served, whatever `--metrics-bind-address` says.
- No webhook server is run. The certificate options only load TLS contexts.
- `--leader-elect` only logs the lease id; no election takes place.

## Tests

```
pip install -e ".[test]"
pytest
```