"""Environment-driven configuration (database connection, runtime limits)."""
