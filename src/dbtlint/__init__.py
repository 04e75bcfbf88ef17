"""dbtlint - metadata lint and description propagation for dbt projects."""

__version__ = "0.1.0"
