"""CLI module for relay-agent."""
