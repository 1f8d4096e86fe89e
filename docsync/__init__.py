"""Directory synchronisation with a replicated server and ring leader election."""

__version__ = "1.0.0"