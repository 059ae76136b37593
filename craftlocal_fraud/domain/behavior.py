"""
Behavioral tracking for one session.

The client forwards raw interaction events; BehaviorTracker accumulates them
and produces BehavioralPattern snapshots for the behavioral analyzer.
All timestamps are epoch milliseconds.
"""
import threading
from typing import Optional

from .models import (
    BehavioralPattern,
    ClickEvent,
    Keystroke,
    MouseMovement,
    ScrollEvent,
)


class BehaviorTracker:
    """
    Accumulates mouse, click, scroll and keyboard events.

    Keystrokes are privacy-masked: any single-character key is stored as
    ``"char"``; named keys (Enter, Backspace, Tab...) keep their name.
    After stop() every record_* call is a no-op.
    """

    def __init__(self, start_ms: float):
        self.start_ms = start_ms
        self._pattern = BehavioralPattern()
        self._interaction_count = 0
        self._last_key_ms: Optional[float] = None
        self._stopped = False
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return not self._stopped

    @property
    def interaction_count(self) -> int:
        return self._interaction_count

    def record_mouse_move(self, x: float, y: float, timestamp_ms: float) -> None:
        with self._lock:
            if self._stopped:
                return
            self._pattern.mouse_movements.append(MouseMovement(x, y, timestamp_ms))
            self._interaction_count += 1

    def record_click(self, x: float, y: float, timestamp_ms: float, element: str = "unknown") -> None:
        with self._lock:
            if self._stopped:
                return
            self._pattern.click_pattern.append(ClickEvent(x, y, timestamp_ms, element or "unknown"))
            self._interaction_count += 1

    def record_scroll(self, scroll_y: float, timestamp_ms: float) -> None:
        with self._lock:
            if self._stopped:
                return
            self._pattern.scroll_pattern.append(ScrollEvent(scroll_y, timestamp_ms))
            self._interaction_count += 1

    def record_keydown(self, key: str, timestamp_ms: float) -> None:
        with self._lock:
            if self._stopped:
                return
            if self._last_key_ms is not None:
                self._pattern.typing_cadence.append(timestamp_ms - self._last_key_ms)
            masked = "char" if len(key) == 1 else key
            self._pattern.keystrokes.append(Keystroke(masked, timestamp_ms, 0.0))
            self._last_key_ms = timestamp_ms
            self._interaction_count += 1

    def snapshot(self, now_ms: float) -> BehavioralPattern:
        """
        Return a copy of the recorded pattern with derived rates as of *now_ms*.

        interaction_speed stays 0 until some time has elapsed.
        """
        with self._lock:
            elapsed_seconds = (now_ms - self.start_ms) / 1000.0
            if elapsed_seconds > 0:
                self._pattern.interaction_speed = self._interaction_count / elapsed_seconds
                self._pattern.page_view_duration = now_ms - self.start_ms
            return BehavioralPattern(
                mouse_movements=list(self._pattern.mouse_movements),
                keystrokes=list(self._pattern.keystrokes),
                scroll_pattern=list(self._pattern.scroll_pattern),
                click_pattern=list(self._pattern.click_pattern),
                page_view_duration=self._pattern.page_view_duration,
                interaction_speed=self._pattern.interaction_speed,
                typing_cadence=list(self._pattern.typing_cadence),
            )

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
