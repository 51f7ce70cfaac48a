"""Kernel utilities - hashing, locks, secrets."""
