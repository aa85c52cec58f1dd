"""Restore and upgrade orchestration for embedded Kubernetes clusters."""

__version__ = "0.1.0"
