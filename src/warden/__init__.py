"""Warden authentication service."""
