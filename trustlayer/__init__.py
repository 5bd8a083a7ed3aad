"""Forum anti-abuse and trust layer."""
