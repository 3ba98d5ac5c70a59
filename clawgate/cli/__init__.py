"""CLI module for clawgate."""
