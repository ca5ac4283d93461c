"""Realtime chat core: connections, rooms, messages, presence."""
