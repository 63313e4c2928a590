"""Catalog, co-occurrence and recency indexes."""
