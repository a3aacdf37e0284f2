from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass

from pydantic import ValidationError

from .errors import ConfigError
from .models import FilterConfig, HealthCheckConfig


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw


_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(text: str) -> float:
    """Parse ``500ms``, ``5s``, ``1m30s``, ``2h`` or a bare number of seconds."""
    raw = (text or "").strip()
    if not raw:
        raise ConfigError("Empty duration.")
    try:
        value = float(raw)
    except ValueError:
        pass
    else:
        if not math.isfinite(value):
            raise ConfigError(f"Invalid duration {text!r}.")
        return value
    total = 0.0
    pos = 0
    for m in _DURATION_PART_RE.finditer(raw):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(raw):
        raise ConfigError(f"Invalid duration {text!r}. Use e.g. 500ms, 5s, 1m30s.")
    return total


def parse_port(text: str | int) -> int:
    raw = str(text).strip()
    try:
        return int(raw or "0")
    except ValueError:
        raise ConfigError(f"Invalid TCP check port {text!r}. Use a number, 0 disables the check.") from None


@dataclass(frozen=True)
class Settings:
    # Scope
    namespace: str = _env_str("NAMESPACE", "default")
    statefulset_name: str = _env_str("STATEFULSET_NAME")
    pod_label_selector: str = _env_str("POD_LABEL_SELECTOR")

    # Health checks
    health_check_url: str = _env_str("HEALTH_CHECK_URL")
    health_check_timeout: str = _env_str("HEALTH_CHECK_TIMEOUT", "5s")
    exec_check_command: str = _env_str("EXEC_CHECK_COMMAND")
    exec_check_container: str = _env_str("EXEC_CHECK_CONTAINER")
    exec_check_expected: str = _env_str("EXEC_CHECK_EXPECTED")
    tcp_check_port: str = _env_str("TCP_CHECK_PORT", "0")

    # Process
    # "0" disables the probe endpoint; ":8080" binds all interfaces.
    health_probe_bind_address: str = _env_str("HEALTH_PROBE_BIND_ADDRESS", "0")
    resync_interval: str = _env_str("RESYNC_INTERVAL", "0")
    log_level: str = _env_str("LOG_LEVEL", "INFO")


settings = Settings()


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        msg = err.get("msg", "invalid")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


def build_filter_config(s: Settings) -> FilterConfig:
    try:
        return FilterConfig(
            namespace=s.namespace,
            group_name=s.statefulset_name,
            label_selector=s.pod_label_selector,
        )
    except ValidationError as e:
        raise ConfigError(_describe(e)) from e


def build_health_config(s: Settings) -> HealthCheckConfig:
    timeout_s = parse_duration(s.health_check_timeout)
    tcp_port = parse_port(s.tcp_check_port)
    try:
        return HealthCheckConfig(
            http_path=s.health_check_url,
            tcp_port=tcp_port,
            exec_command=s.exec_check_command,
            exec_container=s.exec_check_container,
            exec_expected=s.exec_check_expected,
            timeout_s=timeout_s,
        )
    except ValidationError as e:
        raise ConfigError(_describe(e)) from e


def resync_interval_s(s: Settings) -> float:
    value = parse_duration(s.resync_interval)
    if value < 0:
        raise ConfigError("Resync interval must not be negative.")
    return value
