"""Real-estate listings unlocked by payment admission."""
