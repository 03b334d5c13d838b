import threading


class AtomicFlag:
    """Thread-safe boolean cell."""

    def __init__(self, value: bool = False):
        self._lock = threading.Lock()
        self._value = bool(value)

    def get(self) -> bool:
        with self._lock:
            return self._value

    def set(self, value: bool) -> None:
        with self._lock:
            self._value = bool(value)

    def __bool__(self) -> bool:
        return self.get()

    def __repr__(self) -> str:
        return f"AtomicFlag({self.get()})"


class AtomicCounter:
    """
    Thread-safe 32-bit signed integer cell.
    Values wrap around like an int32 would.
    """

    _MIN = -(2 ** 31)
    _RANGE = 2 ** 32

    def __init__(self, value: int = 0):
        self._lock = threading.Lock()
        self._value = self._wrap(value)

    @classmethod
    def _wrap(cls, value: int) -> int:
        return (int(value) - cls._MIN) % cls._RANGE + cls._MIN

    def get(self) -> int:
        with self._lock:
            return self._value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = self._wrap(value)

    def add(self, delta: int) -> int:
        """Adds delta and returns the new value."""
        with self._lock:
            self._value = self._wrap(self._value + delta)
            return self._value

    def increment(self) -> int:
        return self.add(1)

    def compare_and_set(self, expected: int, value: int) -> bool:
        """Sets value only when the current value equals expected."""
        with self._lock:
            if self._value != expected:
                return False
            self._value = self._wrap(value)
            return True

    def __int__(self) -> int:
        return self.get()

    def __repr__(self) -> str:
        return f"AtomicCounter({self.get()})"
