"""wabridge — WhatsApp to Telegram relay."""

__version__ = "2.0.0"
