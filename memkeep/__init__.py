"""memkeep - durable cross-session memory for chat assistants."""

__version__ = "0.1.0"
__logo__ = "🧠"
