import logging

logger = logging.getLogger("signals")


class Signal:
    """
    Minimal listener list.

    A listener that raises is logged and skipped so one bad subscriber
    cannot stop delivery to the others (or kill the loop that emits).
    """

    def __init__(self, name: str = ""):
        self.name = name
        self.callbacks = []

    def connect(self, callback):
        if callback not in self.callbacks:
            self.callbacks.append(callback)
        return callback

    def disconnect(self, callback):
        """Remove a callback from the signal."""
        if callback in self.callbacks:
            self.callbacks.remove(callback)

    def disconnect_all(self):
        """Remove all callbacks."""
        self.callbacks.clear()

    def __len__(self):
        return len(self.callbacks)

    def emit(self, *args, **kwargs) -> int:
        """Call every listener; returns how many raised."""
        failures = 0
        for cb in self.callbacks[:]:
            try:
                cb(*args, **kwargs)
            except Exception:
                failures += 1
                logger.exception(f"Listener {cb!r} on signal '{self.name}' failed")
        return failures
