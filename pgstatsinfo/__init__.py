"""Statistics snapshot collection, COPY support and a repository writer for PostgreSQL."""

__version__ = "0.1.0"