"""Realtime infrastructure shared by the Nexus backend."""
