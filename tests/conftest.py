from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from kube_dethrottler.config import Config
from kube_dethrottler.detectors import Thresholds
from kube_dethrottler.k8s_client import TaintEffect, TaintStore, TaintStoreError
from kube_dethrottler.load import LoadAverages

NODE = "worker-1"
KEY = "kube-dethrottler/high-load"


class FakeTaintStore(TaintStore):
    """In-memory taint list that records every call"""

    def __init__(self, present: bool = False):
        self.taints = {}
        if present:
            self.taints[(KEY, TaintEffect.NO_SCHEDULE)] = "high-load"
        self.calls: List[tuple] = []
        self.fail_has = False
        self.fail_apply = False
        self.fail_remove = False

    def has_taint(self, node_name, key, effect, timeout=None):
        self.calls.append(("has", node_name, key, effect))
        if self.fail_has:
            raise TaintStoreError("apiserver unreachable")
        return (key, effect) in self.taints

    def apply_taint(self, node_name, key, value, effect, timeout=None):
        self.calls.append(("apply", node_name, key, value, effect))
        if self.fail_apply:
            raise TaintStoreError("conflict")
        self.taints[(key, effect)] = value

    def remove_taint(self, node_name, key, effect, timeout=None):
        self.calls.append(("remove", node_name, key, effect, timeout))
        if self.fail_remove:
            raise TaintStoreError("conflict")
        self.taints.pop((key, effect), None)

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)


class FakeSampler:
    def __init__(self, samples: Optional[list] = None, cores: int = 4):
        self.samples = list(samples or [])
        self.cores = cores
        self.calls = 0

    def sample(self) -> LoadAverages:
        self.calls += 1
        if not self.samples:
            return LoadAverages(0.0, 0.0, 0.0)
        item = self.samples.pop(0) if len(self.samples) > 1 else self.samples[0]
        if isinstance(item, Exception):
            raise item
        return item

    def core_count(self) -> int:
        return self.cores


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 20, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def store():
    return FakeTaintStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cfg():
    return Config(
        node_name=NODE,
        taint_key=KEY,
        taint_effect=TaintEffect.NO_SCHEDULE,
        thresholds=Thresholds(load_1m=2.0),
        poll_interval=timedelta(seconds=10),
        cooldown_period=timedelta(minutes=5),
    )
