"""
Resource providers for Moraine.
"""

from moraine.providers.base import ProviderRegistry, ResourceProvider
from moraine.providers.local import LocalProvider
from moraine.providers.action import ActionProvider

__all__ = [
    "ResourceProvider",
    "ProviderRegistry",
    "LocalProvider",
    "ActionProvider",
]
