"""Scheduler extender, admission webhook and device accounting for sharing GPUs in a cluster."""

__version__ = "0.0.1"