"""HTTP security layer: CORS, client keys and route rate limits."""
