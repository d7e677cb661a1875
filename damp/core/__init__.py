"""Core infrastructure: configuration, logging, errors and the engine client."""
