"""Core module - provider-neutral infrastructure.

Configuration, credentials and observability shared by the reconciler,
the Temporal activities and the scripts.

Provider-specific logic (Square) belongs in /connectors/.
"""

__version__ = "1.0.0"
