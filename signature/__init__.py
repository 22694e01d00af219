"""
Signature rendering module.

Provides encrypted storage of drawn signature/initial images, PDF overlay
composition of captured field values, and the audit certificate that is
attached to every final document.
"""
