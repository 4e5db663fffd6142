"""Daily route optimization and dispatch for multi-tenant field teams."""
