"""Small shared helpers (environment parsing, listener registries)."""
