import os
import threading
import time
from typing import Callable, Optional

DUPLICATE_WINDOW_SECONDS = float(os.getenv("DUPLICATE_WINDOW_SECONDS", "30"))
DUPLICATE_CALORIE_ROUNDING = int(os.getenv("DUPLICATE_CALORIE_ROUNDING", "10"))

GuardKey = tuple[int, str, int]


# Same user, meal type and rounded calories inside the window counts as the same meal.
# Heuristic only; food_logs.confirmation_id is the strong key.
class DuplicateGuard:
    def __init__(
        self,
        window_seconds: float = DUPLICATE_WINDOW_SECONDS,
        rounding: int = DUPLICATE_CALORIE_ROUNDING,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.rounding = max(1, rounding)
        self._clock = clock
        self._entries: dict[GuardKey, float] = {}
        self._lock = threading.Lock()

    def key(self, user_id: int, meal_type: str, calories: float) -> GuardKey:
        rounded = int(round(float(calories) / self.rounding)) * self.rounding
        return (user_id, (meal_type or "").lower(), rounded)

    def _prune(self, now: float) -> None:
        expired = [key for key, seen in self._entries.items() if now - seen >= self.window_seconds]
        for key in expired:
            del self._entries[key]

    def is_duplicate(self, user_id: int, meal_type: str, calories: float) -> bool:
        with self._lock:
            now = self._clock()
            self._prune(now)
            return self.key(user_id, meal_type, calories) in self._entries

    def register(self, user_id: int, meal_type: str, calories: float) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._entries[self.key(user_id, meal_type, calories)] = now

    def clear(self, user_id: Optional[int] = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
                return
            for key in [key for key in self._entries if key[0] == user_id]:
                del self._entries[key]


_GUARD = DuplicateGuard()


def get_duplicate_guard() -> DuplicateGuard:
    return _GUARD
