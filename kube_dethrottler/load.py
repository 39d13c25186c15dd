"""
Load average sampling for the local node.

Reads the kernel's load-average exposure and normalizes it by the number of
logical cores available to the process.
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_LOADAVG_PATH = "/proc/loadavg"


class LoadError(Exception):
    """Base class for load sampling failures"""


class LoadReadError(LoadError):
    """The load source could not be read"""


class LoadParseError(LoadError):
    """The load source content was malformed"""


@dataclass(frozen=True)
class LoadAverages:
    """1m, 5m and 15m load averages (raw or normalized)"""
    load_1m: float
    load_5m: float
    load_15m: float


def parse_loadavg(text: str) -> LoadAverages:
    """Parse the first three fields of a loadavg line"""
    fields = text.split()
    if len(fields) < 3:
        raise LoadParseError(
            f"invalid loadavg format: expected at least 3 fields, got {len(fields)}"
        )

    values = []
    for name, field in zip(("1m", "5m", "15m"), fields[:3]):
        try:
            values.append(float(field))
        except ValueError as e:
            raise LoadParseError(f"failed to parse {name} load average {field!r}: {e}") from e

    return LoadAverages(load_1m=values[0], load_5m=values[1], load_15m=values[2])


def normalize(averages: LoadAverages, core_count: int) -> LoadAverages:
    """Divide each load figure by the core count"""
    if core_count <= 0:
        # Should never happen; pass the raw figures through.
        return averages
    return LoadAverages(
        load_1m=averages.load_1m / core_count,
        load_5m=averages.load_5m / core_count,
        load_15m=averages.load_15m / core_count,
    )


class LoadSampler:
    """Samples load averages from a loadavg file"""

    def __init__(self, path: str = DEFAULT_LOADAVG_PATH):
        self.path = path

    def sample(self) -> LoadAverages:
        """Read and parse the current load averages"""
        try:
            with open(self.path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise LoadReadError(f"failed to read {self.path}: {e}") from e
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise LoadParseError(f"{self.path} is not valid UTF-8: {e}") from e
        return parse_loadavg(text)

    def core_count(self) -> int:
        """Number of logical CPUs usable by this process"""
        if hasattr(os, "sched_getaffinity"):
            try:
                return len(os.sched_getaffinity(0))
            except OSError as e:
                logger.warning(f"sched_getaffinity failed, falling back to cpu_count: {e}")
        return os.cpu_count() or 1
