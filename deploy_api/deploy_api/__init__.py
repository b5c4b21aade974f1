"""HTTP control plane for the deployment lifecycle."""

__version__ = "0.3.0"
