"""
Local Provider for Moraine.

A simulated provider for local development and testing. It creates no real
resources; it keeps an in-memory resource table and returns deterministic
outputs so repeated applies of the same inputs yield the same values.
"""

import hashlib
import threading
from typing import Any

import structlog

from moraine.core.hashing import canonical_json
from moraine.providers.base import ResourceProvider

logger = structlog.get_logger(__name__)


class LocalProvider(ResourceProvider):
    """
    Local provider for development and testing.

    Outputs for every resource:
    - ``id``: ``<kind slug>-<short digest of inputs>``
    - ``arn``: ``arn:local:<kind>:<id>``
    - every input, echoed back

    Example:
        provider = LocalProvider()
        outputs = provider.apply("dynamodb:Table", {"partition_key": "lecture"})
        outputs["id"]  # "dynamodb-table-3f2a9c1b"
    """

    def __init__(self, region: str = "local"):
        self.region = region
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def apply(self, kind: str, inputs: dict[str, Any]) -> dict[str, Any]:
        digest = hashlib.sha256(canonical_json({"kind": kind, "inputs": inputs}).encode()).hexdigest()
        slug = kind.lower().replace(":", "-").replace("/", "-")
        resource_id = f"{slug}-{digest[:8]}"
        outputs = {
            **inputs,
            "id": resource_id,
            "arn": f"arn:local:{kind}:{resource_id}",
            "region": self.region,
        }
        with self._lock:
            self.resources[resource_id] = {"kind": kind, "outputs": outputs}
            self.calls.append(("apply", kind, resource_id))
        logger.debug("local_resource_applied", kind=kind, resource_id=resource_id)
        return outputs

    def delete(self, kind: str, outputs: dict[str, Any]) -> None:
        resource_id = outputs.get("id")
        with self._lock:
            self.resources.pop(resource_id, None)
            self.calls.append(("delete", kind, resource_id))
        logger.debug("local_resource_deleted", kind=kind, resource_id=resource_id)

    def get_provider_name(self) -> str:
        """Return provider name."""
        return "local"
