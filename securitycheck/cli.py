"""Command-line entry point that runs the SecurityCheck controller manager."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import ssl
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional, Sequence

from securitycheck.controller import (
    EventRecorder,
    InMemoryClient,
    Request,
    SecurityCheckReconciler,
)
from securitycheck.types import Scheme, add_to_scheme

setup_log = logging.getLogger("setup")
logger = logging.getLogger(__name__)

LEADER_ELECTION_ID = "46a3747f.k8s-operator.pyar.bz"
CONTROLLER_NAME = "securitycheck"

_BACKOFF_BASE = 0.005
_BACKOFF_MAX = 1000.0
_POLL_INTERVAL = 0.1

HealthCheck = Callable[[], None]

_BOOL_WORDS = {
    **dict.fromkeys(("1", "t", "T", "TRUE", "true", "True"), True),
    **dict.fromkeys(("0", "f", "F", "FALSE", "false", "False"), False),
}
_LOG_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "error": logging.ERROR}


def _parse_bool(text: str) -> bool:
    if text not in _BOOL_WORDS:
        raise argparse.ArgumentTypeError(f"invalid boolean value {text!r}")
    return _BOOL_WORDS[text]


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} is missing a port")
    if not port.isdigit() or int(port) > 65535:
        raise ValueError(f"invalid port in address {address!r}")
    return host.strip("[]"), int(port)


@dataclass
class ManagerOptions:
    """Settings of the controller manager, as given on the command line."""

    metrics_bind_address: str = "0"
    health_probe_bind_address: str = ":8081"
    leader_elect: bool = False
    metrics_secure: bool = True
    webhook_cert_path: str = ""
    webhook_cert_name: str = "tls.crt"
    webhook_cert_key: str = "tls.key"
    metrics_cert_path: str = ""
    metrics_cert_name: str = "tls.crt"
    metrics_cert_key: str = "tls.key"
    enable_http2: bool = False
    zap_devel: bool = True
    zap_log_level: Optional[str] = None

    def next_protocols(self) -> list[str]:
        """ALPN protocols offered by the metrics and webhook servers."""
        return ["h2", "http/1.1"] if self.enable_http2 else ["http/1.1"]

    @staticmethod
    def _cert_files(directory: str, cert: str, key: str) -> Optional[tuple[str, str]]:
        if not directory:
            return None
        return os.path.join(directory, cert), os.path.join(directory, key)

    def webhook_cert_files(self) -> Optional[tuple[str, str]]:
        """Certificate and key file of the webhook server, if a directory is set."""
        return self._cert_files(self.webhook_cert_path, self.webhook_cert_name, self.webhook_cert_key)

    def metrics_cert_files(self) -> Optional[tuple[str, str]]:
        """Certificate and key file of the metrics server, if a directory is set."""
        return self._cert_files(self.metrics_cert_path, self.metrics_cert_name, self.metrics_cert_key)


_FLAGS: list[tuple[str, object, str]] = [
    ("metrics-bind-address", "0", "The address the metrics endpoint binds to. Use :8443 for "
     "HTTPS or :8080 for HTTP, or leave as 0 to disable the metrics service."),
    ("health-probe-bind-address", ":8081", "The address the probe endpoint binds to."),
    ("leader-elect", False, "Enable leader election for controller manager. Enabling this "
     "will ensure there is only one active controller manager."),
    ("metrics-secure", True, "If set, the metrics endpoint is served securely via HTTPS. "
     "Use --metrics-secure=false to use HTTP instead."),
    ("webhook-cert-path", "", "The directory that contains the webhook certificate."),
    ("webhook-cert-name", "tls.crt", "The name of the webhook certificate file."),
    ("webhook-cert-key", "tls.key", "The name of the webhook key file."),
    ("metrics-cert-path", "", "The directory that contains the metrics server certificate."),
    ("metrics-cert-name", "tls.crt", "The name of the metrics server certificate file."),
    ("metrics-cert-key", "tls.key", "The name of the metrics server key file."),
    ("enable-http2", False, "If set, HTTP/2 will be enabled for the metrics and webhook servers"),
    ("zap-devel", True, "Development mode defaults: debug level logging."),
]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="securitycheck-manager",
        description="Run the SecurityCheck controller manager.",
        allow_abbrev=False,
    )
    for name, default, help_text in _FLAGS:
        names = (f"--{name}", f"-{name}")
        dest = name.replace("-", "_")
        if isinstance(default, bool):
            parser.add_argument(*names, dest=dest, nargs="?", const=True, default=default,
                                type=_parse_bool, metavar="BOOL", help=help_text)
        else:
            parser.add_argument(*names, dest=dest, default=default, metavar="VALUE",
                                help=help_text)
    parser.add_argument("--zap-log-level", "-zap-log-level", dest="zap_log_level",
                        choices=sorted(_LOG_LEVELS), default=None,
                        help="Log level: debug, info or error.")
    return parser


def parse_options(argv: Optional[Sequence[str]] = None) -> ManagerOptions:
    """Parse command-line flags into ManagerOptions."""
    return ManagerOptions(**vars(_build_parser().parse_args(argv)))


def _tls_context(cert_files: Optional[tuple[str, str]],
                 protocols: list[str]) -> Optional[ssl.SSLContext]:
    if cert_files is None:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(*cert_files)
    context.set_alpn_protocols(protocols)
    return context


class Manager:
    """Runs the reconciler over a work queue and serves health probes."""

    def __init__(self, options: ManagerOptions, reconciler: SecurityCheckReconciler) -> None:
        self.options = options
        self.reconciler = reconciler
        self.started = threading.Event()
        self.reconcile_totals: dict[str, int] = {"success": 0, "error": 0, "requeue_after": 0}
        self._healthz: dict[str, HealthCheck] = {}
        self._readyz: dict[str, HealthCheck] = {}
        self._queue: dict[Request, float] = {}
        self._failures: dict[Request, int] = {}
        self._lock = threading.Lock()
        self._probe_server: Optional[ThreadingHTTPServer] = None

        protocols = options.next_protocols()
        self.webhook_tls_context = _tls_context(options.webhook_cert_files(), protocols)
        self.metrics_tls_context = _tls_context(options.metrics_cert_files(), protocols)
        if options.health_probe_bind_address not in ("", "0"):
            _split_address(options.health_probe_bind_address)

    @property
    def probe_port(self) -> Optional[int]:
        """Port the probe server listens on, once it has started."""
        return None if self._probe_server is None else self._probe_server.server_address[1]

    def _add_check(self, registry: dict[str, HealthCheck], kind: str, name: str,
                   check: HealthCheck) -> None:
        if self.started.is_set():
            raise RuntimeError(f"unable to add {kind} check after manager started")
        if name in registry:
            raise ValueError(f"{kind} checker {name!r} already exists")
        registry[name] = check

    def add_healthz_check(self, name: str, check: HealthCheck) -> None:
        self._add_check(self._healthz, "healthz", name, check)

    def add_readyz_check(self, name: str, check: HealthCheck) -> None:
        self._add_check(self._readyz, "readyz", name, check)

    @staticmethod
    def _failures_of(registry: dict[str, HealthCheck], only: Optional[str] = None) -> list[str]:
        failed = []
        for name, check in registry.items():
            if only not in (None, name):
                continue
            try:
                check()
            except Exception as exc:
                logger.info("%s check failed: %s", name, exc)
                failed.append(name)
        return failed

    def check_health(self) -> bool:
        """True if every liveness check passes."""
        return not self._failures_of(self._healthz)

    def check_ready(self) -> bool:
        """True if every readiness check passes."""
        return not self._failures_of(self._readyz)

    def _schedule(self, request: Request, delay: float) -> None:
        due = time.monotonic() + delay
        with self._lock:
            if due < self._queue.get(request, float("inf")):
                self._queue[request] = due

    def enqueue(self, request: Request) -> None:
        """Queue ``request`` for immediate reconciliation."""
        self._schedule(request, 0.0)

    def run_once(self) -> int:
        """Reconcile every queued request that is due; return how many ran."""
        now = time.monotonic()
        with self._lock:
            due = sorted((r for r, t in self._queue.items() if t <= now), key=self._queue.get)
            for request in due:
                del self._queue[request]
        for request in due:
            self._process(request)
        return len(due)

    def _process(self, request: Request) -> None:
        try:
            result = self.reconciler.reconcile(request)
        except Exception:
            logger.exception("Reconciler error controller=%s request=%s",
                             CONTROLLER_NAME, request.namespaced_name)
            self.reconcile_totals["error"] += 1
            failures = self._failures[request] = self._failures.get(request, 0) + 1
            self._schedule(request, min(_BACKOFF_BASE * 2 ** (failures - 1), _BACKOFF_MAX))
            return
        self._failures.pop(request, None)
        delay = result.requeue_after.total_seconds() if result.requeue_after is not None else 0
        if delay > 0:
            self.reconcile_totals["requeue_after"] += 1
            self._schedule(request, delay)
        else:
            self.reconcile_totals["success"] += 1

    def _start_probe_server(self) -> None:
        address = self.options.health_probe_bind_address
        if address in ("", "0"):
            return
        registries = {"healthz": self._healthz, "readyz": self._readyz}
        failures_of = self._failures_of

        class ProbeHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                path = self.path.split("?", 1)[0].strip("/")
                kind, _, name = path.partition("/")
                registry = registries.get(kind)
                if registry is None or (name and name not in registry):
                    return self._reply(404, "not found")
                failed = failures_of(registry, name or None)
                if failed:
                    lines = [f"[-]{entry} failed" for entry in failed]
                    return self._reply(500, "\n".join(lines + [f"{kind} check failed"]))
                self._reply(200, "ok")

            def _reply(self, code: int, body: str) -> None:
                payload = body.encode()
                self.send_response(code)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format: str, *args: object) -> None:
                logger.debug("probe: " + format, *args)

        self._probe_server = ThreadingHTTPServer(_split_address(address), ProbeHandler)
        self._probe_server.daemon_threads = True
        threading.Thread(target=self._probe_server.serve_forever,
                         name="health-probe", daemon=True).start()

    def start(self, stop_event: threading.Event) -> None:
        """Serve probes and reconcile queued requests until ``stop_event`` is set."""
        if self.started.is_set():
            raise RuntimeError("manager already started")
        self._start_probe_server()
        if self.options.leader_elect:
            logger.info("acquired leader lease id=%s", LEADER_ELECTION_ID)
        logger.info("Starting Controller controller=%s", CONTROLLER_NAME)
        self.started.set()
        try:
            while not stop_event.is_set():
                self.run_once()
                with self._lock:
                    next_due = min(self._queue.values(), default=None)
                wait = _POLL_INTERVAL if next_due is None else max(
                    0.0, min(next_due - time.monotonic(), _POLL_INTERVAL))
                stop_event.wait(wait)
        finally:
            if self._probe_server is not None:
                self._probe_server.shutdown()
                self._probe_server.server_close()
                self._probe_server = None


def _configure_logging(options: ManagerOptions) -> None:
    if options.zap_log_level is not None:
        level = _LOG_LEVELS[options.zap_log_level]
    else:
        level = logging.DEBUG if options.zap_devel else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s\t%(levelname)s\t%(name)s\t%(message)s")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Start the controller manager; return the process exit status."""
    options = parse_options(argv)
    _configure_logging(options)
    if not options.enable_http2:
        setup_log.info("disabling http/2")

    scheme = Scheme()
    add_to_scheme(scheme)
    reconciler = SecurityCheckReconciler(InMemoryClient(), EventRecorder(), scheme)
    try:
        manager = Manager(options, reconciler)
    except (OSError, ssl.SSLError, ValueError) as exc:
        setup_log.error("unable to start manager: %s", exc)
        return 1

    stop = threading.Event()

    def alive() -> None:
        if stop.is_set():
            raise RuntimeError("manager is stopping")

    def ready() -> None:
        if not manager.started.is_set():
            raise RuntimeError("manager has not started")

    for add, name, check in ((manager.add_healthz_check, "healthz", alive),
                             (manager.add_readyz_check, "readyz", ready)):
        try:
            add(name, check)
        except (RuntimeError, ValueError) as exc:
            setup_log.error("unable to set up %s check: %s", name, exc)
            return 1

    def on_signal(signum: int, _frame: object) -> None:
        if stop.is_set():
            os._exit(1)
        stop.set()

    previous = {sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    setup_log.info("starting manager")
    try:
        manager.start(stop)
    except Exception as exc:
        setup_log.error("problem running manager: %s", exc)
        return 1
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return 0