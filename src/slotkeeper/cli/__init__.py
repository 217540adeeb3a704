"""Typer sub-applications for the slotkeeper command."""
