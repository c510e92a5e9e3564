"""dualpath: a fast/deliberate task router with a sandboxed execution gate."""

__version__ = "0.1.0"
