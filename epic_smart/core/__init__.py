"""Configuration, logging, errors and audit trail shared by the client core."""
