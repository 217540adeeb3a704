"""Query functions for Slotkeeper database models."""
