"""HTTP surface: blob file host, health endpoints, and the OAuth callback."""
