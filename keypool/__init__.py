"""Encrypted disks whose keys live in a single encrypted keystore."""
