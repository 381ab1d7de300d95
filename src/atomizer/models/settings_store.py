"""
Key-value blob stores backing the persistence gateway.

The gateway only needs string values under string keys; QSettings is the
application backend, the in-memory store serves ephemeral runs and tests.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from PyQt6.QtCore import QSettings

from ..constants import SETTINGS_APPLICATION, SETTINGS_ORGANIZATION

logger = logging.getLogger(__name__)


class SettingsStore(ABC):
    """Opaque string blob store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key is absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass


class QSettingsStore(SettingsStore):
    """Store backed by the platform's native QSettings location."""

    def __init__(self, organization: str = SETTINGS_ORGANIZATION,
                 application: str = SETTINGS_APPLICATION,
                 settings: Optional[QSettings] = None):
        self._settings = settings or QSettings(organization, application)
        logger.debug(f"Settings file: {self._settings.fileName()}")

    def get(self, key: str) -> Optional[str]:
        if not self._settings.contains(key):
            return None
        value = self._settings.value(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str) -> None:
        self._settings.setValue(key, value)
        self._settings.sync()

    def remove(self, key: str) -> None:
        self._settings.remove(key)
        self._settings.sync()


class MemorySettingsStore(SettingsStore):
    """Non-persistent store."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)
