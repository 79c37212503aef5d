"""Transport record codec for shared Mancala game state."""

from __future__ import annotations

import json
from typing import Any, Dict, Union

from mancala_engine import BOARD_SIZE, DRAW, PLAYER_ONE, PLAYER_TWO, GameState

KEY_PREFIX = "mancala_game_"


class DecodeFailure(ValueError):
    """The received record is not a structurally valid game snapshot."""


def state_key(instance: str) -> str:
    return f"{KEY_PREFIX}{instance}"


def state_to_record(state: GameState) -> Dict[str, Any]:
    return {
        "pits": list(state.pits),
        "currentPlayer": state.current_player,
        "winner": state.winner,
        "gameOver": state.game_over,
    }


def encode_state(state: GameState) -> str:
    return json.dumps(state_to_record(state), separators=(",", ":"))


def _is_int(value: object) -> bool:
    # bool is an int subclass; JSON true/false must not pass as counts
    return isinstance(value, int) and not isinstance(value, bool)


def record_to_state(record: object) -> GameState:
    if not isinstance(record, dict):
        raise DecodeFailure("record must be a JSON object")

    missing = [name for name in ("pits", "currentPlayer", "winner", "gameOver") if name not in record]
    if missing:
        raise DecodeFailure(f"record is missing {', '.join(missing)}")

    pits = record["pits"]
    if not isinstance(pits, list) or len(pits) != BOARD_SIZE:
        raise DecodeFailure(f"pits must be a list of {BOARD_SIZE} integers")
    for n in pits:
        if not _is_int(n) or n < 0:
            raise DecodeFailure(f"invalid pit count: {n!r}")

    current_player = record["currentPlayer"]
    if not _is_int(current_player) or current_player not in (PLAYER_ONE, PLAYER_TWO):
        raise DecodeFailure(f"invalid currentPlayer: {current_player!r}")

    winner = record["winner"]
    if winner is not None and winner != DRAW and not (_is_int(winner) and winner in (PLAYER_ONE, PLAYER_TWO)):
        raise DecodeFailure(f"invalid winner: {winner!r}")

    game_over = record["gameOver"]
    if not isinstance(game_over, bool):
        raise DecodeFailure(f"invalid gameOver: {game_over!r}")

    return GameState(tuple(pits), current_player, winner, game_over)


def decode_state(payload: Union[str, bytes]) -> GameState:
    try:
        record = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise DecodeFailure(f"record is not valid JSON: {exc}") from exc
    except RecursionError as exc:
        raise DecodeFailure("record is nested too deeply") from exc
    return record_to_state(record)
