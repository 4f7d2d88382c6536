"""Agent contract, backends and the call adapter."""
