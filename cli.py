from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from dataclasses import replace
from threading import Event

import requests

from restarter.errors import ConfigError
from restarter.events import event_log, log_event
from restarter.filters import FilterMatcher
from restarter.health import HealthChecker
from restarter.kube import KubeStore, PodWatcher
from restarter.probes import ProbeServer, create_app, parse_bind_address
from restarter.reconciler import PodReconciler, ReconcileWorker
from restarter.settings import Settings, build_filter_config, build_health_config, resync_interval_s, settings
from restarter.workqueue import WorkQueue


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _add_run_args(p: argparse.ArgumentParser) -> None:
    s = settings
    p.add_argument("--namespace", default=s.namespace, help="Namespace to watch (env: NAMESPACE)")
    p.add_argument("--statefulset", default=s.statefulset_name, help="StatefulSet to monitor (env: STATEFULSET_NAME)")
    p.add_argument(
        "--pod-label-selector",
        default=s.pod_label_selector,
        help="Pod label selector, e.g. 'app=router,component=druid' (env: POD_LABEL_SELECTOR)",
    )
    p.add_argument("--health-check-url", default=s.health_check_url, help="HTTP check path, e.g. /health (env: HEALTH_CHECK_URL)")
    p.add_argument(
        "--health-check-timeout", default=s.health_check_timeout, help="Timeout for every check (env: HEALTH_CHECK_TIMEOUT)"
    )
    p.add_argument(
        "--exec-check-command",
        default=s.exec_check_command,
        help="Command run in the container, e.g. 'ps aux | grep java' (env: EXEC_CHECK_COMMAND)",
    )
    p.add_argument(
        "--exec-check-container",
        default=s.exec_check_container,
        help="Container for the exec check, empty for the first one (env: EXEC_CHECK_CONTAINER)",
    )
    p.add_argument(
        "--exec-check-expected",
        default=s.exec_check_expected,
        help="Expected exec output, empty to check the exit code only (env: EXEC_CHECK_EXPECTED)",
    )
    p.add_argument("--tcp-check-port", default=s.tcp_check_port, help="TCP port to check, 0 disables (env: TCP_CHECK_PORT)")
    p.add_argument(
        "--health-probe-bind-address",
        default=s.health_probe_bind_address,
        help="Address of this process's probe endpoint, e.g. :8081; 0 disables (env: HEALTH_PROBE_BIND_ADDRESS)",
    )
    p.add_argument(
        "--resync-interval",
        default=s.resync_interval,
        help="Re-check every pod this often even without changes; 0 disables (env: RESYNC_INTERVAL)",
    )
    p.add_argument("--log-level", default=s.log_level, help="DEBUG, INFO, WARNING or ERROR (env: LOG_LEVEL)")


def settings_from_args(args: argparse.Namespace) -> Settings:
    return replace(
        settings,
        namespace=args.namespace,
        statefulset_name=args.statefulset,
        pod_label_selector=args.pod_label_selector,
        health_check_url=args.health_check_url,
        health_check_timeout=args.health_check_timeout,
        exec_check_command=args.exec_check_command,
        exec_check_container=args.exec_check_container,
        exec_check_expected=args.exec_check_expected,
        tcp_check_port=args.tcp_check_port,
        health_probe_bind_address=args.health_probe_bind_address,
        resync_interval=args.resync_interval,
        log_level=args.log_level,
    )


def run(s: Settings) -> int:
    # Config errors surface here, before any cluster connection.
    filter_cfg = build_filter_config(s)
    health_cfg = build_health_config(s)
    resync_s = resync_interval_s(s)
    probe_addr = parse_bind_address(s.health_probe_bind_address)

    logging.basicConfig(
        level=getattr(logging, s.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    log_event(
        "INFO",
        f"Starting restarter controller namespace={filter_cfg.namespace} statefulset={filter_cfg.group_name!r} "
        f"podLabelSelector={filter_cfg.label_selector!r} healthCheckURL={health_cfg.http_path!r} "
        f"healthCheckTimeout={health_cfg.timeout_s}s execCheckCommand={health_cfg.exec_command!r} "
        f"tcpCheckPort={health_cfg.tcp_port}",
    )

    store = KubeStore.from_environment()
    # The exec channel is only wired when the exec layer is enabled.
    checker = HealthChecker(exec_channel=store if health_cfg.exec_enabled else None)
    queue = WorkQueue()
    worker = ReconcileWorker(PodReconciler(store, FilterMatcher(filter_cfg, store), checker, health_cfg), queue)
    watcher = PodWatcher(store, queue, filter_cfg.namespace, filter_cfg.label_selector, resync_interval_s=resync_s)
    probe = ProbeServer(create_app(worker, event_log), *probe_addr) if probe_addr else None

    stop = Event()

    def _on_signal(signum, frame) -> None:
        log_event("INFO", f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    worker.start()
    watcher.start()
    if probe:
        probe.start()

    while not stop.wait(1.0):
        pass

    watcher.stop()
    worker.stop()
    if probe:
        probe.stop()
    checker.close()
    log_event("INFO", "Controller stopped")
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Recycle unhealthy StatefulSet / label-selected pods")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_run = sub.add_parser("run", help="Run the controller")
    _add_run_args(s_run)

    s_ev = sub.add_parser("events", help="Show recent events of a running controller")
    s_ev.add_argument("--api", default="http://localhost:8081", help="Probe endpoint base URL")
    s_ev.add_argument("--limit", type=int, default=20)

    s_st = sub.add_parser("status", help="Show readiness of a running controller")
    s_st.add_argument("--api", default="http://localhost:8081", help="Probe endpoint base URL")

    args = p.parse_args(argv)

    if args.cmd == "run":
        try:
            return run(settings_from_args(args))
        except ConfigError as e:
            print(f"restarter: configuration error: {e}", file=sys.stderr)
            return 1

    base = args.api.rstrip("/")

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "status":
        r = requests.get(f"{base}/readyz", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
