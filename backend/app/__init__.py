"""Nexus messaging backend application."""
