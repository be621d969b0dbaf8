"""Data-access subscriptions unlocked by payment admission."""
