import os as _os
import sys

import pytest

# Ensure project root is importable (so `import cli` works reliably across environments)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from restarter.errors import InfraError, UnitNotFound  # noqa: E402
from restarter.events import event_log  # noqa: E402
from restarter.models import ContainerStatus, ManagedUnit, Phase  # noqa: E402


def _make_unit(
    name: str = "router-0",
    namespace: str = "default",
    phase: Phase = Phase.RUNNING,
    ready: bool = True,
    labels: dict | None = None,
    containers: tuple = ("app",),
    address: str | None = "127.0.0.1",
    container_statuses: tuple | None = None,
    uid: str | None = "uid-1",
) -> ManagedUnit:
    if container_statuses is None:
        container_statuses = tuple(ContainerStatus(name=c, ready=True) for c in containers)
    return ManagedUnit(
        namespace=namespace,
        name=name,
        uid=uid,
        phase=phase,
        ready=ready,
        labels={"app": "router"} if labels is None else labels,
        containers=containers,
        address=address,
        container_statuses=container_statuses,
    )


class FakeStore:
    """In-memory stand-in for the cluster; records every call."""

    def __init__(self, units=(), group_selectors=None):
        self.units = {(u.namespace, u.name): u for u in units}
        self.group_selectors = dict(group_selectors or {})
        self.get_error = None
        self.delete_error = None
        self.group_error = None
        self.calls = []

    def add(self, unit):
        self.units[(unit.namespace, unit.name)] = unit
        return unit

    def calls_of(self, kind):
        return [c for c in self.calls if c[0] == kind]

    def get_unit(self, namespace, name):
        self.calls.append(("get", namespace, name))
        if self.get_error:
            raise self.get_error
        try:
            return self.units[(namespace, name)]
        except KeyError:
            raise UnitNotFound(f"pod {namespace}/{name} not found") from None

    def delete_unit(self, namespace, name, uid=None):
        self.calls.append(("delete", namespace, name, uid))
        if self.delete_error:
            raise self.delete_error
        if (namespace, name) not in self.units:
            raise UnitNotFound(f"pod {namespace}/{name} already deleted")
        del self.units[(namespace, name)]

    def get_group_selector(self, namespace, group_name):
        self.calls.append(("group", namespace, group_name))
        if self.group_error:
            raise self.group_error
        if group_name not in self.group_selectors:
            raise InfraError(f"StatefulSet {namespace}/{group_name} not found")
        return self.group_selectors[group_name]


@pytest.fixture
def make_unit():
    return _make_unit


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture(autouse=True)
def _clean_event_log():
    event_log.clear()
    yield
    event_log.clear()
