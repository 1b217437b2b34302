"""Static JSON API generators.

Each generator takes an ``EmitContext`` and returns the number of documents it
wrote. ``run_generate`` in the orchestrator runs them in registry order.
"""

from __future__ import annotations

from ._helpers import EmitContext
from .indexes import generate_all_indexes
from .leaderboards import generate_dungeon_leaderboards
from .player_leaderboards import generate_player_leaderboards
from .players import generate_player_profiles

GENERATORS = {
    "players": generate_player_profiles,
    "leaderboards": generate_dungeon_leaderboards,
    "player_leaderboards": generate_player_leaderboards,
    "indexes": generate_all_indexes,
}

__all__ = [
    "EmitContext",
    "GENERATORS",
    "generate_all_indexes",
    "generate_dungeon_leaderboards",
    "generate_player_leaderboards",
    "generate_player_profiles",
]
