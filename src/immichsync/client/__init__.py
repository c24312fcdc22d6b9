"""Client module - Immich API client, metadata extraction and sync engine."""
