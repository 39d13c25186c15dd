import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .detectors import Verdict
from .k8s_client import TaintDescriptor, TaintStore, TaintStoreError
from .metrics import DethrottlerMetrics
from .state import ControllerState, cooldown_elapsed, time_since_taint


class Transition(Enum):
    APPLIED = "applied"
    APPLY_FAILED = "apply_failed"
    EXTENDED = "extended"
    HOLDING = "holding"
    REMOVED = "removed"
    REMOVE_FAILED = "remove_failed"
    NOOP = "noop"


class TaintStateMachine:
    """Turns overload verdicts into taint apply/remove calls.

    Clean + overloaded applies the taint. Tainted + overloaded pushes the
    cooldown clock forward. Tainted + not overloaded removes the taint once
    the cooldown has elapsed since the last overloaded tick. Store failures
    leave the state untouched so the same action is retried next tick.
    """

    def __init__(
        self,
        node_name: str,
        taint: TaintDescriptor,
        store: TaintStore,
        cooldown: timedelta,
        state: Optional[ControllerState] = None,
        metrics: Optional[DethrottlerMetrics] = None,
    ):
        self.node_name = node_name
        self.taint = taint
        self.store = store
        self.cooldown = cooldown
        self.state = state or ControllerState()
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

    def step(self, verdict: Verdict, now: datetime) -> Transition:
        if verdict.overloaded:
            if not self.state.tainted:
                return self._apply(now)
            self.logger.info("Threshold exceeded, but node is already tainted. Extending cooldown.")
            self.state.record_overload(now)
            return Transition.EXTENDED

        if not self.state.tainted:
            self.logger.info("All metrics below thresholds. No action needed.")
            return Transition.NOOP

        if cooldown_elapsed(self.state, now, self.cooldown):
            return self._remove()

        self.logger.info(
            f"Metrics are below thresholds, but cooldown period ({self.cooldown}) not yet passed. "
            f"Time since last overload: {time_since_taint(self.state, now)}"
        )
        return Transition.HOLDING

    def _apply(self, now: datetime) -> Transition:
        self.logger.info(f"Threshold exceeded. Applying taint {self.taint} to node {self.node_name}")
        try:
            self.store.apply_taint(self.node_name, self.taint.key, self.taint.value, self.taint.effect)
        except TaintStoreError as e:
            self.logger.error(f"Error applying taint: {e}")
            self._record("apply", False)
            return Transition.APPLY_FAILED

        self.state.record_overload(now)
        self._record("apply", True)
        self.logger.info(f"Taint {self.taint.key} applied successfully.")
        return Transition.APPLIED

    def _remove(self) -> Transition:
        self.logger.info(
            f"All metrics below thresholds and cooldown period ({self.cooldown}) passed. "
            f"Removing taint {self.taint.key} from node {self.node_name}"
        )
        try:
            self.store.remove_taint(self.node_name, self.taint.key, self.taint.effect)
        except TaintStoreError as e:
            self.logger.error(f"Error removing taint: {e}")
            self._record("remove", False)
            return Transition.REMOVE_FAILED

        self.state.clear()
        self._record("remove", True)
        self.logger.info(f"Taint {self.taint.key} removed successfully.")
        return Transition.REMOVED

    def _record(self, operation: str, success: bool):
        if self.metrics is None:
            return
        self.metrics.record_operation(operation, success)
        self.metrics.set_tainted(self.state.tainted)
