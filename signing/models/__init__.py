"""Domain models for the signing feature (storage- and transport-agnostic)."""
