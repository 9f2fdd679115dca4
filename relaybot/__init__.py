"""Relaybot - relay chat messages to an AI task backend, under a crash-recovery supervisor."""

__version__ = "0.1.0"
