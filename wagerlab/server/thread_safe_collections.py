"""Lock-guarded dict used for process-wide server maps.

Originally adapted from: https://github.com/HumanCompatibleAI/overcooked-demo/blob/master/server/utils.py
"""

from __future__ import annotations

from threading import RLock


class ThreadSafeDict(dict):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lock = RLock()

    def __setitem__(self, *args, **kwargs):
        with self.lock:
            retval = super().__setitem__(*args, **kwargs)
        return retval

    def __delitem__(self, item):
        with self.lock:
            if item in self:
                retval = super().__delitem__(item)
            else:
                retval = None
        return retval

    def pop(self, *args, **kwargs):
        with self.lock:
            retval = super().pop(*args, **kwargs)
        return retval

    def setdefault(self, *args, **kwargs):
        with self.lock:
            retval = super().setdefault(*args, **kwargs)
        return retval

    def clear(self, *args, **kwargs):
        with self.lock:
            retval = super().clear(*args, **kwargs)
        return retval

    def snapshot(self) -> list[tuple]:
        """Consistent copy of the items for iteration while others write."""
        with self.lock:
            return list(super().items())
