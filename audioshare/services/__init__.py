"""Domain services: indexing, queries and scheduling."""
