"""Creator chat: transcript ingestion and citation-backed chat over YouTube channels."""
