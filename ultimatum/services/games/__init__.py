"""Game domain services: matchmaking, role scheduling, rounds and payouts.

This package contains the coordination logic that HTTP routes and socket
handlers call into, keeping transport concerns separated from the game
mechanics. All shared state lives in the database; nothing here keeps
per-game state in process memory.
"""
