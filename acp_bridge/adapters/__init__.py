"""Adapters between the ACP socket, the session store and web clients."""
