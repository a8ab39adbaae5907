"""Event streaming, routing and publishing."""
