"""HTTP control plane for the usage metering and billing engine."""

__version__ = "0.1.0"
