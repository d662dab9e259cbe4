"""Infrastructure layer - upstream clients, persistence and observability."""
