import socket

import httpx
import pytest

from restarter.errors import ExecStreamError, InfraError
from restarter.health import HealthChecker
from restarter.models import ContainerStatus, ExecResult, HealthCheckConfig, Phase


class FakeExecChannel:
    def __init__(self, result=None, error=None):
        self.result = result or ExecResult(stdout="", stderr="", exit_code=0)
        self.error = error
        self.calls = []

    def exec_in_container(self, namespace, name, container, command, timeout_s):
        self.calls.append((namespace, name, container, command, timeout_s))
        if self.error:
            raise self.error
        return self.result


def _mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=False)


def _count_optional_layers(checker, monkeypatch, results=None):
    """Replace the optional layers with counters; returns the call log."""
    results = results or {}
    calls = []
    for layer in ("check_http", "check_tcp", "check_exec"):

        def fake(*args, _layer=layer, **kwargs):
            calls.append(_layer)
            return results.get(_layer, (True, "ok"))

        monkeypatch.setattr(checker, layer, fake)
    return calls


ALL_LAYERS = HealthCheckConfig(http_path="/health", tcp_port=9000, exec_command="true")


def _closed_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.mark.parametrize(
    "kwargs,reason",
    [
        ({"phase": Phase.PENDING}, "Phase is Pending"),
        ({"phase": Phase.FAILED}, "Phase is Failed"),
        ({"ready": False}, "Ready condition"),
        ({"container_statuses": (ContainerStatus("app", ready=False),)}, "not ready"),
        (
            {"container_statuses": (ContainerStatus("app", ready=True, waiting=True, waiting_reason="CrashLoopBackOff"),)},
            "CrashLoopBackOff",
        ),
    ],
)
def test_status_layer_failures(make_unit, kwargs, reason):
    ok, msg = HealthChecker().check_status(make_unit(**kwargs))
    assert ok is False
    assert reason in msg


@pytest.mark.parametrize("phase", [Phase.PENDING, Phase.SUCCEEDED, Phase.FAILED, Phase.UNKNOWN])
def test_not_running_is_unhealthy_without_optional_layers(make_unit, monkeypatch, phase):
    checker = HealthChecker()
    calls = _count_optional_layers(checker, monkeypatch)

    healthy, _ = checker.evaluate(make_unit(phase=phase), ALL_LAYERS)

    assert healthy is False
    assert calls == []


@pytest.mark.parametrize(
    "kwargs,expected",
    [
        ({}, True),
        ({"ready": False}, False),
        ({"phase": Phase.PENDING}, False),
        ({"container_statuses": (ContainerStatus("app", ready=False),)}, False),
        ({"address": None}, True),
    ],
)
def test_no_optional_layers_follows_status(make_unit, kwargs, expected):
    healthy, _ = HealthChecker().evaluate(make_unit(**kwargs), HealthCheckConfig())
    assert healthy is expected


def test_all_layers_run_in_order_when_passing(make_unit, monkeypatch):
    checker = HealthChecker()
    calls = _count_optional_layers(checker, monkeypatch)

    assert checker.evaluate(make_unit(), ALL_LAYERS) == (True, "Healthy")
    assert calls == ["check_http", "check_tcp", "check_exec"]


def test_http_failure_skips_tcp_and_exec(make_unit, monkeypatch):
    checker = HealthChecker()
    calls = _count_optional_layers(checker, monkeypatch, {"check_http": (False, "HTTP 503")})

    assert checker.evaluate(make_unit(), ALL_LAYERS) == (False, "HTTP 503")
    assert calls == ["check_http"]


def test_tcp_failure_skips_exec(make_unit, monkeypatch):
    checker = HealthChecker()
    calls = _count_optional_layers(checker, monkeypatch, {"check_tcp": (False, "closed")})

    healthy, _ = checker.evaluate(make_unit(), ALL_LAYERS)
    assert healthy is False
    assert calls == ["check_http", "check_tcp"]


def test_only_configured_layers_run(make_unit, monkeypatch):
    checker = HealthChecker()
    calls = _count_optional_layers(checker, monkeypatch)

    checker.evaluate(make_unit(), HealthCheckConfig(tcp_port=9000))
    assert calls == ["check_tcp"]


# HTTP layer


@pytest.mark.parametrize("status,expected", [(200, True), (204, True), (302, True), (399, True), (404, False), (503, False)])
def test_http_status_codes(make_unit, status, expected):
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(status)

    checker = HealthChecker(http_client=_mock_client(handler))
    healthy, _ = checker.evaluate(make_unit(address="10.0.0.1"), HealthCheckConfig(http_path="/health"))

    assert healthy is expected
    assert seen == ["http://10.0.0.1:8080/health"]


def test_http_unreachable_is_unhealthy_not_error(make_unit):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    checker = HealthChecker(http_client=_mock_client(handler))
    healthy, msg = checker.evaluate(make_unit(), HealthCheckConfig(http_path="/health"))

    assert healthy is False
    assert "No response" in msg


def test_http_timeout_is_unhealthy(make_unit):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    checker = HealthChecker(http_client=_mock_client(handler))
    healthy, _ = checker.evaluate(make_unit(), HealthCheckConfig(http_path="/health", timeout_s=0.5))
    assert healthy is False


def test_http_ipv6_address_is_bracketed(make_unit):
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200)

    checker = HealthChecker(http_client=_mock_client(handler))
    checker.check_http(make_unit(address="fd00::1"), "/health", 1.0)
    assert seen == ["http://[fd00::1]:8080/health"]


def test_http_without_address_is_an_error(make_unit):
    checker = HealthChecker(http_client=_mock_client(lambda request: httpx.Response(200)))
    with pytest.raises(InfraError):
        checker.evaluate(make_unit(address=None), HealthCheckConfig(http_path="/health"))


# TCP layer


def test_tcp_open_port_is_healthy(make_unit):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as srv:
        srv.bind(("127.0.0.1", 0))
        srv.listen(1)
        port = srv.getsockname()[1]

        healthy, _ = HealthChecker().evaluate(make_unit(address="127.0.0.1"), HealthCheckConfig(tcp_port=port, timeout_s=2))

    assert healthy is True


def test_tcp_closed_port_is_unhealthy(make_unit):
    healthy, msg = HealthChecker().evaluate(
        make_unit(address="127.0.0.1"), HealthCheckConfig(tcp_port=_closed_port(), timeout_s=2)
    )
    assert healthy is False
    assert "not accepting connections" in msg


def test_tcp_without_address_is_an_error(make_unit):
    with pytest.raises(InfraError):
        HealthChecker().evaluate(make_unit(address=""), HealthCheckConfig(tcp_port=9000))


# Exec layer


@pytest.mark.parametrize(
    "result,expected_output,healthy",
    [
        (ExecResult("", "boom", 2), "", False),
        (ExecResult("java", "", 0), "java", True),
        (ExecResult("python", "", 0), "java", False),
        (ExecResult("root  1  java -jar app.jar\n", "", 0), "java", True),
        (ExecResult("anything", "", 0), "", True),
        (ExecResult("java", "", None), "java", False),
    ],
)
def test_exec_results(make_unit, result, expected_output, healthy):
    channel = FakeExecChannel(result)
    opts = HealthCheckConfig(exec_command="ps aux | grep java", exec_expected=expected_output, timeout_s=3)

    ok, _ = HealthChecker(exec_channel=channel).evaluate(make_unit(), opts)

    assert ok is healthy
    assert channel.calls == [("default", "router-0", "app", "ps aux | grep java", 3)]


def test_exec_defaults_to_first_container(make_unit):
    channel = FakeExecChannel()
    unit = make_unit(containers=("main", "sidecar"))

    HealthChecker(exec_channel=channel).evaluate(unit, HealthCheckConfig(exec_command="true"))
    HealthChecker(exec_channel=channel).evaluate(unit, HealthCheckConfig(exec_command="true", exec_container="sidecar"))

    assert [c[2] for c in channel.calls] == ["main", "sidecar"]


def test_exec_stream_error_is_unhealthy(make_unit):
    channel = FakeExecChannel(error=ExecStreamError("websocket closed"))
    healthy, msg = HealthChecker(exec_channel=channel).evaluate(make_unit(), HealthCheckConfig(exec_command="true"))
    assert healthy is False
    assert "websocket closed" in msg


def test_exec_without_channel_is_an_error(make_unit):
    with pytest.raises(InfraError):
        HealthChecker().evaluate(make_unit(), HealthCheckConfig(exec_command="true"))


def test_exec_in_undeclared_container_is_an_error(make_unit):
    channel = FakeExecChannel()
    with pytest.raises(InfraError):
        HealthChecker(exec_channel=channel).evaluate(
            make_unit(), HealthCheckConfig(exec_command="true", exec_container="typo")
        )
    assert channel.calls == []


def test_exec_in_pod_without_containers_is_an_error(make_unit):
    with pytest.raises(InfraError):
        HealthChecker(exec_channel=FakeExecChannel()).evaluate(
            make_unit(containers=(), container_statuses=()), HealthCheckConfig(exec_command="true")
        )


def test_default_http_client_ignores_proxy_environment(monkeypatch):
    monkeypatch.setenv("HTTP_PROXY", "http://proxy.invalid:3128")
    checker = HealthChecker()
    try:
        assert checker.http_client.trust_env is False
        assert checker.http_client.follow_redirects is False
    finally:
        checker.close()
