"""Process-level wiring: configuration, logging and runtime."""
