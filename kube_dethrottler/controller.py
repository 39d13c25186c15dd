"""
kube-dethrottler controller.

Polls the node's load averages on a fixed interval and taints the node
while it is overloaded, removing the taint once load has stayed below the
thresholds for the cooldown period.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config import DEFAULT_CONFIG_PATH, Config, ConfigError, load_config
from .detectors import Period, evaluate, value_for
from .k8s_client import KubeTaintStore, TaintStore, TaintStoreError
from .load import LoadError, LoadSampler, normalize
from .metrics import DethrottlerMetrics
from .remediators import TaintStateMachine, Transition
from .state import ControllerState

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Controller:
    """Owns the controller state and drives the poll loop"""

    def __init__(
        self,
        cfg: Config,
        store: TaintStore,
        sampler: LoadSampler,
        metrics: Optional[DethrottlerMetrics] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = cfg
        self.store = store
        self.sampler = sampler
        self.metrics = metrics
        self.clock = clock
        self.core_count = sampler.core_count()
        self.machine = TaintStateMachine(
            node_name=cfg.node_name,
            taint=cfg.taint,
            store=store,
            cooldown=cfg.cooldown_period,
            metrics=metrics,
        )
        self.logger = logging.getLogger(__name__)

    @property
    def state(self) -> ControllerState:
        return self.machine.state

    def reconcile(self) -> ControllerState:
        """Seed the state from a taint that may already be on the node"""
        taint = self.config.taint
        try:
            present = self.store.has_taint(self.config.node_name, taint.key, taint.effect)
        except TaintStoreError as e:
            self.logger.error(f"Error checking initial taint status: {e}. Assuming not tainted.")
            present = False

        state = ControllerState()
        if present:
            # The store does not expose when the taint was applied
            state.record_overload(self.clock())
            self.logger.info(f"Node is already tainted with {taint}")

        self.machine.state = state
        if self.metrics:
            self.metrics.set_tainted(state.tainted)
        return state

    def tick(self) -> Optional[Transition]:
        """Sample, evaluate and step the state machine once"""
        try:
            raw = self.sampler.sample()
        except LoadError as e:
            self.logger.error(f"Error reading load averages: {e}")
            return None

        normalized = normalize(raw, self.core_count)
        self.logger.debug(f"Raw Load: 1m={raw.load_1m:.2f}, 5m={raw.load_5m:.2f}, 15m={raw.load_15m:.2f}")
        self.logger.info(
            f"Normalized Load: 1m={normalized.load_1m:.2f}, "
            f"5m={normalized.load_5m:.2f}, 15m={normalized.load_15m:.2f}"
        )

        thresholds = self.config.thresholds
        verdict = evaluate(normalized, thresholds)
        for period in Period:
            if period not in verdict.exceeded:
                continue
            self.logger.info(
                f"{period.value} ({value_for(normalized, period):.2f}) exceeded "
                f"threshold ({thresholds.for_period(period):.2f})"
            )

        if self.metrics:
            self.metrics.observe_load(normalized)
            self.metrics.observe_verdict(verdict)

        return self.machine.step(verdict, self.clock())

    def shutdown(self):
        """Best-effort removal of our taint, independent of the stop signal"""
        self.logger.info("Shutting down controller...")
        if not self.state.tainted:
            return

        taint = self.config.taint
        self.logger.info(f"Attempting to remove taint {taint.key} on shutdown...")
        try:
            self.store.remove_taint(
                self.config.node_name,
                taint.key,
                taint.effect,
                timeout=self.config.shutdown_timeout.total_seconds(),
            )
        except TaintStoreError as e:
            self.logger.error(f"Failed to remove taint on shutdown: {e}")
            if self.metrics:
                self.metrics.record_operation("remove", False)
            return

        self.state.clear()
        if self.metrics:
            self.metrics.record_operation("remove", True)
            self.metrics.set_tainted(False)
        self.logger.info(f"Taint {taint.key} removed successfully on shutdown.")

    def _log_startup(self):
        cfg = self.config
        t = cfg.thresholds
        self.logger.info(f"🚀 Starting kube-dethrottler on node: {cfg.node_name}")
        if cfg.resolved_path:
            self.logger.info(f"Config File: {cfg.resolved_path}")
        self.logger.info(f"CPU Cores: {self.core_count}")
        self.logger.info(f"Poll Interval: {cfg.poll_interval}")
        self.logger.info(f"Cooldown Period: {cfg.cooldown_period}")
        self.logger.info(f"Taint Key: {cfg.taint_key}, Effect: {cfg.taint_effect.value}")
        self.logger.info(
            f"Thresholds: Load1m: {t.load_1m:.2f}, Load5m: {t.load_5m:.2f}, "
            f"Load15m: {t.load_15m:.2f} (0 means disabled)"
        )

    async def run(self, stop_event: asyncio.Event):
        """Run until stop_event is set, then clean up"""
        if not self.config.node_name:
            raise ConfigError(
                "Node name is not configured. Ensure NODE_NAME env var is set via Downward API or in config."
            )

        self._log_startup()
        self.reconcile()

        loop = asyncio.get_running_loop()
        interval = self.config.poll_interval.total_seconds()
        next_tick = loop.time() + interval

        try:
            while not stop_event.is_set():
                delay = max(0.0, next_tick - loop.time())
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

                # Store calls block the loop; a tick always runs to completion
                try:
                    self.tick()
                except Exception:
                    self.logger.exception("Unexpected error during tick, continuing")

                next_tick += interval
                now = loop.time()
                if next_tick < now:
                    # Overran: drop the missed ticks and fire once right away
                    next_tick += ((now - next_tick) // interval) * interval
        finally:
            self.shutdown()


def watch_signals(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event):
    """Set stop_event on SIGINT or SIGTERM"""

    def _handle(sig: signal.Signals):
        logger.info(f"Received signal: {sig.name}. Initiating shutdown...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle, sig)


async def run_controller(controller: Controller):
    stop_event = asyncio.Event()
    watch_signals(asyncio.get_running_loop(), stop_event)
    await controller.run(stop_event)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="kube-dethrottler",
        description="Taint the local Kubernetes node while its load average is too high.",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("KUBE_DETHROTTLER_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to the configuration file.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging verbosity.",
    )
    return parser.parse_args(argv)


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Failed to load configuration from {args.config}: {e}")
        return 1

    try:
        store = KubeTaintStore.from_kubeconfig(cfg.kubeconfig_path or None)
    except TaintStoreError as e:
        logger.error(f"Failed to create Kubernetes client: {e}")
        return 1

    metrics = DethrottlerMetrics(cfg.node_name)
    if cfg.metrics_port:
        try:
            metrics.serve(cfg.metrics_port)
        except OSError as e:
            logger.error(f"Failed to start metrics server on port {cfg.metrics_port}: {e}")
            return 1

    controller = Controller(cfg, store, LoadSampler(cfg.loadavg_path), metrics=metrics)

    try:
        asyncio.run(run_controller(controller))
    except ConfigError as e:
        logger.error(str(e))
        return 1

    logger.info("kube-dethrottler has shut down.")
    return 0


def cli():
    sys.exit(main())
