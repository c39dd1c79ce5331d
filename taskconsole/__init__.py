"""Task, resource and async-operation diagnostics: a layer that collects them, an aggregator that keeps their state, and a server that streams it to in-process clients."""

__version__ = "0.1.0"