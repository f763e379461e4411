"""Core layer - configuration, logging, errors and caller identity."""
