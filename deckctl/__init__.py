"""Host-side client for BLE macro decks."""

__version__ = "0.1.0"
