"""REST API routes for the pricesync server."""
