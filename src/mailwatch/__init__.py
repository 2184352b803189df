"""Mailwatch: per-tenant Gmail watch subscriptions and transaction ingestion."""

__version__ = "0.1.0"
