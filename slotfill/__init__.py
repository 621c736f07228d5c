"""Waitlist-to-slot fulfillment engine."""
