"""Backup, restore and migration for a Portainer-managed Docker host."""

__version__ = '3.0.0'
