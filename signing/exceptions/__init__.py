"""Signing feature exceptions (see :mod:`signing.exceptions.errors`)."""
