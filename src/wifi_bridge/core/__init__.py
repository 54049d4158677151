"""Core association controller, data model and platform backends."""
