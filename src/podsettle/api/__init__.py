"""HTTP status endpoint."""
