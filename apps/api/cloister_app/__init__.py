"""Cloister application layer: backing service access, RAG flows and surfaces."""
