"""
Shared fixtures: a provider that records every call and can be told to fail.
"""

import threading
import time

import pytest

from moraine.providers.base import ProviderRegistry, ResourceProvider
from moraine.state.store import MemoryStateStore


class RecordingProvider(ResourceProvider):
    """Provider that echoes inputs as outputs and records calls."""

    def __init__(self, fail_on=None, delay=0.0):
        self.fail_on = set(fail_on or [])
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def apply(self, kind, inputs):
        name = inputs.get("name", kind)
        with self._lock:
            self.calls.append(("apply", name))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if name in self.fail_on:
                raise RuntimeError(f"provider rejected {name}")
            return {**inputs, "id": f"{name}-id", "arn": f"arn:test:{name}"}
        finally:
            with self._lock:
                self.active -= 1

    def delete(self, kind, outputs):
        with self._lock:
            self.calls.append(("delete", outputs.get("name", kind)))

    def applied(self):
        return [name for action, name in self.calls if action == "apply"]

    def deleted(self):
        return [name for action, name in self.calls if action == "delete"]


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def registry(provider):
    return ProviderRegistry(default=provider)


@pytest.fixture
def store():
    return MemoryStateStore()
