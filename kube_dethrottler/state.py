from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass
class ControllerState:
    """What the controller believes about its taint.

    last_taint_time is the last moment the node was seen overloaded while
    tainted, not the original apply time.
    """
    tainted: bool = False
    last_taint_time: Optional[datetime] = None

    def record_overload(self, now: datetime):
        self.tainted = True
        self.last_taint_time = now

    def clear(self):
        self.tainted = False


def cooldown_elapsed(state: ControllerState, now: datetime, cooldown: timedelta) -> bool:
    if state.last_taint_time is None:
        return True
    return now - state.last_taint_time >= cooldown


def time_since_taint(state: ControllerState, now: datetime) -> Optional[timedelta]:
    if state.last_taint_time is None:
        return None
    return now - state.last_taint_time
