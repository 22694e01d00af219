"""Business logic of the signing feature (rules, locking, composition)."""
