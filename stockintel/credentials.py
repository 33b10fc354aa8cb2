"""
Credential providers.

Gatherers and the aggregator only ask two questions: is there a key for this
provider, and what is it. Where keys are stored is up to the implementation.
"""
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from loguru import logger


class CredentialProvider(ABC):
    """
    Abstract credential lookup keyed by provider id (e.g. 'polygon', 'grok').
    """

    @abstractmethod
    def get_credential(self, source_id: str) -> Optional[str]:
        """
        Get the credential for a provider.

        Args:
            source_id: Provider id

        Returns:
            The credential, or None if not configured
        """
        pass

    def has_credential(self, source_id: str) -> bool:
        return bool(self.get_credential(source_id))


class StaticCredentialProvider(CredentialProvider):
    """In-memory credentials."""

    def __init__(self, credentials: Optional[Mapping[str, Optional[str]]] = None):
        self._credentials = dict(credentials or {})

    def get_credential(self, source_id: str) -> Optional[str]:
        return self._credentials.get(source_id) or None


class ConfigCredentialProvider(StaticCredentialProvider):
    """
    Credentials from the `credentials` config section.

    Values are usually ${ENV_VAR} placeholders already resolved by
    load_config; an empty string counts as absent.
    """

    def __init__(self, config: Dict[str, Any]):
        credentials = config.get('credentials', {}) or {}
        super().__init__({k: (str(v) if v else None) for k, v in credentials.items()})
        configured = [k for k, v in self._credentials.items() if v]
        logger.info(f"ConfigCredentialProvider initialized | Configured: {', '.join(configured) or 'none'}")


class EnvCredentialProvider(CredentialProvider):
    """Reads {PREFIX}{ID}_API_KEY from the environment on every lookup."""

    def __init__(self, prefix: str = "STOCKINTEL_"):
        self.prefix = prefix

    def get_credential(self, source_id: str) -> Optional[str]:
        name = f"{self.prefix}{source_id.upper().replace('-', '_')}_API_KEY"
        return os.environ.get(name) or None
