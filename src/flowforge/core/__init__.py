"""Core infrastructure: exceptions, settings and the workflow schema."""
