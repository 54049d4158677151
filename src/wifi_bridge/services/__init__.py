"""Method-call surface exposed to the application layer."""
