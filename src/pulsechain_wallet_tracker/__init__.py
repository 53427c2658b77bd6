"""PulseChain wallet balance tracker - live-updated, self-reconciling balance cache."""

__version__ = "0.1.0"
