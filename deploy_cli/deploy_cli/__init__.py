"""Operator CLI for the deployment lifecycle control plane."""

__version__ = "0.3.0"
