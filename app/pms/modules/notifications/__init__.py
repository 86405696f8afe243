"""Notification dispatch and recipient inbox."""
