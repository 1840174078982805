from stolos_bootstrap.config.models import ClusterParameters
from stolos_bootstrap.errors import GenerationError, StateWriteError
from stolos_bootstrap.machineconfig.generator import BUNDLE_FILES, ConfigBundle
from stolos_bootstrap.state.persistence import StatePersistence


class FakeGenerator:
    """Deterministic bundle, but every render differs so caching is observable."""

    def __init__(self):
        self.bundles = []
        self.renders = []
        self.fail_render = False

    def create_bundle(self, params, endpoint):
        self.bundles.append(endpoint)
        return ConfigBundle(
            controlplane=f"type: controlplane\nendpoint: {endpoint}\n".encode(),
            worker=f"type: worker\nendpoint: {endpoint}\n".encode(),
            talosconfig=b"context: test\n",
        )

    def render(self, bundle, role, *, hostname, install_disk):
        if self.fail_render:
            raise GenerationError("generator exploded")
        self.renders.append((role, hostname, install_disk))
        return bundle.base_for(role) + f"hostname: {hostname}\ndisk: {install_disk}\nrender: {len(self.renders)}\n".encode()


class FlakyPersistence(StatePersistence):
    """Fails every save while ``broken`` is set."""

    def __init__(self, state_dir, bundle_files=BUNDLE_FILES):
        super().__init__(state_dir, bundle_files)
        self.broken = False
        self.saves = 0

    def save(self, state, bundle_files=None):
        if self.broken:
            raise StateWriteError("disk full")
        self.saves += 1
        super().save(state, bundle_files)


def cluster_params(**kw) -> ClusterParameters:
    kw.setdefault("cluster_name", "lab")
    kw.setdefault("http_hostname", "10.0.0.2")
    return ClusterParameters(**kw)


class Capture:
    def __init__(self):
        self.events = []

    def notify(self, ev):
        self.events.append(ev)

    def of(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


