"""clawhub - managed AI-agent instances on interchangeable compute providers."""

__version__ = "0.1.0"
