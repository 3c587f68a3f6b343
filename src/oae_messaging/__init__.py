"""Message storage and hashed path resolution for OAE content repositories."""
