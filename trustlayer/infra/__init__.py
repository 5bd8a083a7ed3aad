"""Process-wide infrastructure adapters (Redis, Postgres, rate windows)."""
