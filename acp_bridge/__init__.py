"""ACP bridge - HTTP + SSE front for an ACP agent process."""

__version__ = "0.1.0"
