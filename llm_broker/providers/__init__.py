"""
Text-generation backends for LLM Broker.

Provides the remote, local and offline implementations of the
provider contract.
"""

from .base import Provider
from .factory import create_provider
from .local import LocalProvider
from .offline import OfflineProvider
from .remote import RemoteProvider

__all__ = ["Provider", "RemoteProvider", "LocalProvider", "OfflineProvider", "create_provider"]
