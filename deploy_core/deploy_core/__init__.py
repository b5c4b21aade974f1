"""Deployment lifecycle engine: state model, CAS store, and lifecycle rules."""

__version__ = "0.3.0"
