"""flowbench: flow execution engine for the API-testing workbench."""

__version__ = "0.1.0"
