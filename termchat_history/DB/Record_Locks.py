# Record_Locks.py
# Description: Per-record lock registry used to serialize writes to the same history record.
#
# Imports
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List
#
########################################################################################################################
#
# Functions:


class _LockSlot:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class RecordLockRegistry:
    """
    Hands out one lock per record uuid.

    A foreground write and a remote-pull write for the same uuid are serialized; writes for
    different uuids do not block each other. Slots are reference counted and dropped once no
    thread holds or waits on them, so the registry does not grow with history size.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._slots: Dict[str, _LockSlot] = {}

    @contextmanager
    def hold(self, record_uuid: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.get(record_uuid)
            if slot is None:
                slot = self._slots[record_uuid] = _LockSlot()
            slot.holders += 1
        slot.lock.acquire()
        try:
            yield
        finally:
            slot.lock.release()
            with self._guard:
                slot.holders -= 1
                if slot.holders == 0:
                    del self._slots[record_uuid]

    def active_keys(self) -> List[str]:
        with self._guard:
            return list(self._slots)

#
# End of Record_Locks.py
########################################################################################################################
