"""Email notification delivery: messages, templates, attachment fetching, webhook sending and an outbox publisher."""

__version__ = "0.1.0"