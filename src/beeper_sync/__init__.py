"""Beeper hub synchronization: chats, messages and participants mirrored into a local database."""
