"""Database layer for the Slotkeeper database heartbeat backend."""
