"""Billing services: gateway client, creation protocol, reconciliation, queries."""
