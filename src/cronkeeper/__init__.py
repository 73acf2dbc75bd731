"""Cronkeeper · Verwaltung periodischer Jobs für den Cron-Daemon des Hosts."""

__version__ = "0.5.0"
