"""Channel ingestion pipeline for creator chat.

This package resolves YouTube channels, extracts caption transcripts,
chunks them by token budget and stores embedded chunks for retrieval.
"""
