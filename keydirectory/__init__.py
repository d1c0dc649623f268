"""Key directory service: publishes recipients' public keys and group memberships."""
