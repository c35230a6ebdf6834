"""Upload and link conversion clients."""
