"""
Device License Service for the Shop Analytics Dashboard

This service binds a purchased license key to a single device. It verifies
purchases with the licensing provider, issues short-lived signed device
tokens, and keeps activations fresh through periodic heartbeats with an
offline grace period on the client.
"""

__version__ = "1.0.0"
