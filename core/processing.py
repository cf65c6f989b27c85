"""
In-flight MR tracking
Guarantees at most one concurrent review per MR within this process
"""
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Set

from core.exceptions import AlreadyProcessing

logger = logging.getLogger(__name__)


class ProcessingController:
    """
    Set of MR iids currently under review

    An iid is a member exactly while a pipeline run for it sits between
    admission and completion. Never persisted, empty after a restart.
    """

    def __init__(self):
        self._processing: Set[int] = set()
        self._lock = threading.Lock()

    def try_acquire(self, mr_iid: int) -> bool:
        """Admit an MR; False when it is already in flight"""
        with self._lock:
            if mr_iid in self._processing:
                return False
            self._processing.add(mr_iid)
            return True

    def release(self, mr_iid: int) -> None:
        with self._lock:
            self._processing.discard(mr_iid)

    def is_processing(self, mr_iid: int) -> bool:
        with self._lock:
            return mr_iid in self._processing

    @property
    def in_flight(self) -> Set[int]:
        """Snapshot of the iids under review"""
        with self._lock:
            return set(self._processing)

    @contextmanager
    def admit(self, mr_iid: int) -> Iterator[None]:
        """
        Hold admission for the duration of the block

        Raises:
            AlreadyProcessing: the MR is already in flight
        """
        if not self.try_acquire(mr_iid):
            raise AlreadyProcessing(mr_iid)
        try:
            yield
        finally:
            self.release(mr_iid)
