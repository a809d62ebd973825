"""Core domain layer: enums, models, interfaces, errors and the credential vault."""
