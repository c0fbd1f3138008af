"""Outbound email notifications."""
