"""HTTP and SSE surface of the bridge."""
