"""
Business-profile persistence capability and an in-memory implementation.
"""

import copy
import threading
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ..models.core import AnalysisOutput, Confidence
from .logging_config import get_logger

logger = get_logger(__name__)


class ProfileStoreError(Exception):
    """Custom exception for profile persistence errors."""
    pass


def is_empty_value(value: Any) -> bool:
    """A slot is empty when it holds nothing, a blank string or an empty collection."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


class ProfileRecord(Protocol):
    """Slot-level access to one business profile."""

    def get_profile_field(self, slot: str) -> Tuple[Any, Optional[Confidence]]:
        """Return (value, confidence stamp) for a slot; (None, None) if unset."""
        ...

    def set_profile_field(self, slot: str, value: Any, confidence: Confidence) -> None:
        """Write a slot value together with its confidence stamp."""
        ...

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Every filled slot as {slot: {'value': ..., 'confidence': ...}}."""
        ...


class ProfileRepository(Protocol):
    """Hands out profile records and keeps the analysis audit trail."""

    def record_for(self, profile_id: str) -> ProfileRecord:
        ...

    def record_analysis(self, session_id: str, output: AnalysisOutput) -> None:
        ...


class InMemoryProfileRecord:
    """Dict-backed profile record; each slot write is independent."""

    def __init__(self, profile_id: str):
        self.profile_id = profile_id
        self._slots: Dict[str, Tuple[Any, Confidence]] = {}
        self._lock = threading.Lock()

    def get_profile_field(self, slot: str) -> Tuple[Any, Optional[Confidence]]:
        with self._lock:
            value, confidence = self._slots.get(slot, (None, None))
            return copy.deepcopy(value), confidence

    def set_profile_field(self, slot: str, value: Any, confidence: Confidence) -> None:
        with self._lock:
            self._slots[slot] = (copy.deepcopy(value), confidence)
        logger.debug(f'Profile {self.profile_id}: wrote {slot} at {confidence.value}')

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                slot: {
                    'value': copy.deepcopy(value),
                    'confidence': confidence.value if confidence else None
                }
                for slot, (value, confidence) in self._slots.items()
            }


class InMemoryProfileRepository:
    """Process-local profile repository, used for tests and local runs."""

    def __init__(self):
        self._records: Dict[str, InMemoryProfileRecord] = {}
        self._lock = threading.Lock()
        self.analyses: List[Tuple[str, AnalysisOutput]] = []

    def record_for(self, profile_id: str) -> InMemoryProfileRecord:
        with self._lock:
            if profile_id not in self._records:
                self._records[profile_id] = InMemoryProfileRecord(profile_id)
            return self._records[profile_id]

    def record_analysis(self, session_id: str, output: AnalysisOutput) -> None:
        with self._lock:
            self.analyses.append((session_id, output))
