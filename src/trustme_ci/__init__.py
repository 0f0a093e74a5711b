"""Self-preempting build coordinator: the newest save always wins."""

__version__ = "0.3.0"
