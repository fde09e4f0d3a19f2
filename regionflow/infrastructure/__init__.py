"""Infrastructure layer: state backends, configuration, observability and executor adapters."""
