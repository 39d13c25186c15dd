"""Taint a Kubernetes node while its normalized load average is too high."""

__version__ = "0.1.0"
