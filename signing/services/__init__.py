"""Service facades: issuer API, recipient API and engine wiring."""
