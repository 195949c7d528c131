"""Infrastructure layer: logging, metrics and broker messaging."""
