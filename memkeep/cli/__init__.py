"""CLI module for memkeep."""
