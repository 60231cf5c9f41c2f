"""
Base provider abstraction.

Providers are the only code that talks to the outside world. The engine asks
them to apply a resource kind with resolved inputs, or to delete a resource
given the outputs recorded when it was applied.
"""

from abc import ABC, abstractmethod
from typing import Any

from moraine.core.errors import ProviderNotFoundError


class ResourceProvider(ABC):
    """
    Base class for resource providers.

    ``apply`` and ``delete`` may be plain methods or coroutines. Plain
    methods are run in a worker thread by the executor so a slow call never
    blocks dispatch. Raising any exception marks the node as failed.

    Example:
        class BucketProvider(ResourceProvider):
            def apply(self, kind, inputs):
                bucket = s3.create_bucket(Bucket=inputs["name"])
                return {"bucket_name": inputs["name"], "arn": bucket.arn}

            def delete(self, kind, outputs):
                s3.delete_bucket(Bucket=outputs["bucket_name"])
    """

    @abstractmethod
    def apply(self, kind: str, inputs: dict[str, Any]) -> dict[str, Any]:
        """
        Create or update a resource.

        Args:
            kind: Resource kind
            inputs: Fully resolved inputs

        Returns:
            Output values that other resources may reference
        """
        pass

    @abstractmethod
    def delete(self, kind: str, outputs: dict[str, Any]) -> None:
        """
        Delete a resource.

        Args:
            kind: Resource kind recorded at apply time
            outputs: Outputs recorded at apply time
        """
        pass

    def get_provider_name(self) -> str:
        """Return provider name."""
        return type(self).__name__


class ProviderRegistry:
    """
    Maps resource kinds to providers.

    Kinds are matched exactly first, then by prefix up to ``:`` (so a
    provider registered for ``"aws"`` serves ``"aws:Bucket"``), then the
    default provider.

    Example:
        providers = ProviderRegistry(default=LocalProvider())
        providers.register("action", actions)
    """

    def __init__(
        self,
        providers: dict[str, ResourceProvider] | None = None,
        default: ResourceProvider | None = None,
    ):
        self._providers: dict[str, ResourceProvider] = dict(providers or {})
        self.default = default

    def register(self, kind: str, provider: ResourceProvider) -> None:
        self._providers[kind] = provider

    def get(self, kind: str) -> ResourceProvider:
        """
        Find the provider for a kind.

        Raises:
            ProviderNotFoundError: If nothing matches and there is no default
        """
        if kind in self._providers:
            return self._providers[kind]
        prefix = kind.split(":", 1)[0]
        if prefix in self._providers:
            return self._providers[prefix]
        if self.default is not None:
            return self.default
        raise ProviderNotFoundError(kind)

    def kinds(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, kind: object) -> bool:
        return isinstance(kind, str) and (
            kind in self._providers
            or kind.split(":", 1)[0] in self._providers
            or self.default is not None
        )
