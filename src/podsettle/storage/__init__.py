"""DuckDB persistence for bet records."""
