"""Polling sync: role views, pollers, and the availability sweep."""
