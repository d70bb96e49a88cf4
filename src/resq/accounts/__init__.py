"""User accounts, session slot, and actor identity."""
