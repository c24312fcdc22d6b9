"""ImmichSync - watch local folders and upload new media to an Immich server."""

__version__ = "0.1.0"
