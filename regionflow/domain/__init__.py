"""Domain layer: models, interfaces, errors and components."""
