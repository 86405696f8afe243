"""Actor registration and administrator account management."""
