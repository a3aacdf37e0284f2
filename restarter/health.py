from __future__ import annotations

import socket
import time
from typing import Protocol

import httpx

from .errors import ExecStreamError, InfraError
from .models import ExecResult, HealthCheckConfig, ManagedUnit, Phase

# HTTP checks always target this port on the replica.
HTTP_CHECK_PORT = 8080


class ExecChannel(Protocol):
    def exec_in_container(
        self, namespace: str, name: str, container: str, command: str, timeout_s: float
    ) -> ExecResult: ...


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000.0, 2)


def _url_host(address: str) -> str:
    return f"[{address}]" if ":" in address else address


class HealthChecker:
    """Layered health check for one replica.

    Layers run in a fixed order (status, HTTP, TCP, exec) and the first
    failing layer ends the evaluation; later layers are not called. Each
    layer returns (healthy, message). A layer that cannot run at all raises
    InfraError, which is not a verdict and must not lead to a recycle.

    The HTTP client and exec channel are shared across calls and never
    mutated per call. The default HTTP client ignores proxy settings from the
    environment; checks always go straight to the pod IP.
    """

    def __init__(self, exec_channel: ExecChannel | None = None, http_client: httpx.Client | None = None):
        self.exec_channel = exec_channel
        self.http_client = http_client or httpx.Client(follow_redirects=False, trust_env=False)

    def close(self) -> None:
        self.http_client.close()

    def evaluate(self, unit: ManagedUnit, opts: HealthCheckConfig) -> tuple[bool, str]:
        ok, msg = self.check_status(unit)
        if not ok:
            return False, msg

        if opts.http_enabled:
            ok, msg = self.check_http(unit, opts.http_path, opts.timeout_s)
            if not ok:
                return False, msg

        if opts.tcp_enabled:
            ok, msg = self.check_tcp(unit, opts.tcp_port, opts.timeout_s)
            if not ok:
                return False, msg

        if opts.exec_enabled:
            ok, msg = self.check_exec(unit, opts)
            if not ok:
                return False, msg

        return True, "Healthy"

    def check_status(self, unit: ManagedUnit) -> tuple[bool, str]:
        if unit.phase != Phase.RUNNING:
            return False, f"Phase is {unit.phase.value}"
        if not unit.ready:
            return False, "Ready condition is not true"
        for cs in unit.container_statuses:
            if not cs.ready:
                return False, f"Container '{cs.name}' is not ready"
            if cs.waiting:
                return False, f"Container '{cs.name}' is waiting ({cs.waiting_reason or 'no reason'})"
        return True, "Running and ready"

    def _require_address(self, unit: ManagedUnit, layer: str) -> str:
        if not unit.address:
            raise InfraError(f"{layer} check needs the pod IP, which is not available yet")
        return unit.address

    def check_http(self, unit: ManagedUnit, path: str, timeout_s: float) -> tuple[bool, str]:
        address = self._require_address(unit, "HTTP")
        url = f"http://{_url_host(address)}:{HTTP_CHECK_PORT}{path}"
        start = time.time()
        try:
            resp = self.http_client.get(url, timeout=timeout_s)
        except httpx.HTTPError as e:
            # An unreachable endpoint is itself the health signal.
            return False, f"No response from {url} after {_elapsed_ms(start)} ms ({type(e).__name__})"
        latency_ms = _elapsed_ms(start)
        if 200 <= resp.status_code < 400:
            return True, f"HTTP {resp.status_code} in {latency_ms} ms"
        return False, f"HTTP {resp.status_code} from {url}"

    def check_tcp(self, unit: ManagedUnit, port: int, timeout_s: float) -> tuple[bool, str]:
        address = self._require_address(unit, "TCP")
        start = time.time()
        try:
            with socket.create_connection((address, port), timeout=timeout_s):
                pass
        except OSError as e:
            return False, f"TCP port {port} not accepting connections ({type(e).__name__}: {e})"
        return True, f"TCP port {port} open in {_elapsed_ms(start)} ms"

    def check_exec(self, unit: ManagedUnit, opts: HealthCheckConfig) -> tuple[bool, str]:
        if self.exec_channel is None:
            raise InfraError("exec check is configured but no exec channel is available")
        if not unit.containers:
            raise InfraError("pod has no containers")
        container = opts.exec_container or unit.containers[0]
        if container not in unit.containers:
            raise InfraError(f"container '{container}' is not declared in the pod")

        try:
            result = self.exec_channel.exec_in_container(
                unit.namespace, unit.name, container, opts.exec_command, opts.timeout_s
            )
        except ExecStreamError as e:
            return False, f"Exec in '{container}' failed: {e}"

        if result.exit_code is None:
            return False, f"Exec in '{container}' did not finish within {opts.timeout_s}s"
        if result.exit_code != 0:
            return False, f"Exec in '{container}' exited with code {result.exit_code}"
        if opts.exec_expected and opts.exec_expected not in result.stdout:
            return False, f"Exec output did not contain {opts.exec_expected!r}"
        return True, "Exec check passed"
