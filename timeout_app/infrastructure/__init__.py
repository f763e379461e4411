"""Infrastructure layer - document store adapters."""
