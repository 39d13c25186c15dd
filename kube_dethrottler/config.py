"""
Configuration loading and validation for kube-dethrottler.

The configuration is a YAML document, normally mounted from a ConfigMap.
The node name usually comes from the NODE_NAME environment variable
injected through the Downward API.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional, Union

import yaml

from .detectors import Thresholds
from .k8s_client import TaintDescriptor, TaintEffect
from .load import DEFAULT_LOADAVG_PATH

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/kube-dethrottler/config.yaml"
DEFAULT_TAINT_KEY = "kube-dethrottler/high-load"
DEFAULT_POLL_INTERVAL = timedelta(seconds=10)
DEFAULT_COOLDOWN_PERIOD = timedelta(minutes=5)
DEFAULT_SHUTDOWN_TIMEOUT = timedelta(seconds=10)

MIN_POLL_INTERVAL = timedelta(seconds=1)
MAX_POLL_INTERVAL = timedelta(minutes=5)

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


class ConfigError(Exception):
    """The configuration could not be loaded or is invalid"""


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """Parse "10s", "5m", "1m30s", "250ms" or a bare number of seconds"""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration: {value!r}")

    text = value.strip()
    if text in ("", "0"):
        return timedelta(0)

    sign = 1
    if text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]

    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ConfigError(f"invalid duration: {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0:
        raise ConfigError(f"invalid duration: {value!r}")

    return timedelta(seconds=sign * seconds)


def format_duration(value: timedelta) -> str:
    total = value.total_seconds()
    if total and total % 3600 == 0:
        return f"{int(total // 3600)}h"
    if total and total % 60 == 0:
        return f"{int(total // 60)}m"
    if total == int(total):
        return f"{int(total)}s"
    return f"{total:g}s"


@dataclass
class Config:
    node_name: str = ""
    taint_key: str = DEFAULT_TAINT_KEY
    taint_effect: TaintEffect = TaintEffect.NO_SCHEDULE
    kubeconfig_path: str = ""
    loadavg_path: str = DEFAULT_LOADAVG_PATH
    thresholds: Thresholds = field(default_factory=Thresholds)
    poll_interval: timedelta = DEFAULT_POLL_INTERVAL
    cooldown_period: timedelta = DEFAULT_COOLDOWN_PERIOD
    shutdown_timeout: timedelta = DEFAULT_SHUTDOWN_TIMEOUT
    metrics_port: int = 0
    resolved_path: Optional[str] = None

    @property
    def taint(self) -> TaintDescriptor:
        return TaintDescriptor(key=self.taint_key, effect=self.taint_effect)

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot be run"""
        if self.poll_interval < MIN_POLL_INTERVAL:
            raise ConfigError(
                f"pollInterval must be at least 1 second, got {format_duration(self.poll_interval)}"
            )
        if self.poll_interval > MAX_POLL_INTERVAL:
            raise ConfigError(
                f"pollInterval should not exceed 5 minutes, got {format_duration(self.poll_interval)}"
            )

        if self.cooldown_period < self.poll_interval:
            raise ConfigError(
                f"cooldownPeriod ({format_duration(self.cooldown_period)}) must not be shorter "
                f"than pollInterval ({format_duration(self.poll_interval)})"
            )

        if self.shutdown_timeout <= timedelta(0):
            raise ConfigError("shutdownTimeout must be positive")

        if not isinstance(self.taint_effect, TaintEffect):
            raise ConfigError(f"invalid taintEffect: {self.taint_effect!r}")

        if not self.taint_key:
            raise ConfigError("taintKey must not be empty")

        t = self.thresholds
        if t.load_1m < 0 or t.load_5m < 0 or t.load_15m < 0:
            raise ConfigError("load thresholds cannot be negative")
        if not t.any_enabled():
            raise ConfigError("at least one load threshold must be set (non-zero)")

        if not 0 <= self.metrics_port <= 65535:
            raise ConfigError(f"metricsPort must be between 0 and 65535, got {self.metrics_port}")

        if not self.node_name:
            raise ConfigError(
                "node name is not configured; set NODE_NAME via the Downward API or nodeName in the config"
            )


def _parse_effect(raw: Any) -> TaintEffect:
    try:
        return TaintEffect(raw)
    except ValueError:
        valid = ", ".join(e.value for e in TaintEffect)
        raise ConfigError(f"invalid taintEffect: {raw}. Must be one of: {valid}") from None


def _parse_float(raw: Any, name: str) -> float:
    if isinstance(raw, bool):
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _parse_thresholds(raw: Optional[Dict[str, Any]]) -> Thresholds:
    if raw is None:
        return Thresholds()
    if not isinstance(raw, dict):
        raise ConfigError("thresholds must be a mapping")
    return Thresholds(
        load_1m=_parse_float(raw.get("load1m", 0), "thresholds.load1m"),
        load_5m=_parse_float(raw.get("load5m", 0), "thresholds.load5m"),
        load_15m=_parse_float(raw.get("load15m", 0), "thresholds.load15m"),
    )


def config_from_dict(data: Dict[str, Any]) -> Config:
    """Build a Config from a parsed YAML mapping, applying defaults"""
    cfg = Config(
        node_name=data.get("nodeName") or "",
        taint_key=data.get("taintKey") or DEFAULT_TAINT_KEY,
        taint_effect=_parse_effect(data.get("taintEffect") or TaintEffect.NO_SCHEDULE.value),
        kubeconfig_path=data.get("kubeconfigPath") or "",
        loadavg_path=data.get("loadavgPath") or DEFAULT_LOADAVG_PATH,
        thresholds=_parse_thresholds(data.get("thresholds")),
    )

    for key, attr in (
        ("pollInterval", "poll_interval"),
        ("cooldownPeriod", "cooldown_period"),
        ("shutdownTimeout", "shutdown_timeout"),
    ):
        raw = data.get(key)
        if raw is None:
            continue
        duration = parse_duration(raw)
        # A zero value means "use the default"
        if duration != timedelta(0):
            setattr(cfg, attr, duration)

    port = data.get("metricsPort")
    if port is not None:
        if isinstance(port, bool) or not isinstance(port, int):
            raise ConfigError(f"metricsPort must be an integer, got {port!r}")
        cfg.metrics_port = port

    return cfg


def load_config(path: str) -> Config:
    """Read, default and validate the YAML configuration at path"""
    abs_path = os.path.abspath(os.path.normpath(path))

    if not os.path.exists(abs_path):
        raise ConfigError(f"config file not found: {abs_path}")
    if os.path.isdir(abs_path):
        raise ConfigError(f"config path is a directory, not a file: {abs_path}")
    if not abs_path.lower().endswith((".yaml", ".yml")):
        raise ConfigError(f"config file must have .yaml or .yml extension: {abs_path}")

    try:
        with open(abs_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"failed to read config file {abs_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file {abs_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {abs_path} must contain a mapping")

    cfg = config_from_dict(data)
    cfg.resolved_path = abs_path

    if not cfg.node_name:
        cfg.node_name = os.environ.get("NODE_NAME", "")

    try:
        cfg.validate()
    except ConfigError as e:
        raise ConfigError(f"invalid configuration: {e}") from e

    logger.debug(f"Loaded configuration from {abs_path}")
    return cfg
