"""Core rules engine for two-player Mancala (Kalah, 14-slot board)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

PLAYER_ONE = 1
PLAYER_TWO = 2
DRAW = "draw"

BOARD_SIZE = 14
PITS_PER_SIDE = 6
STORE_ONE = 6
STORE_TWO = 13
PITS_ONE: Tuple[int, ...] = tuple(range(0, 6))
PITS_TWO: Tuple[int, ...] = tuple(range(7, 13))

HIGHLIGHT_VALID = "valid"
HIGHLIGHT_INACTIVE = "inactive"
HIGHLIGHT_NEUTRAL = "neutral"

Winner = Optional[Union[int, str]]


class InvalidMove(ValueError):
    """A move was rejected; the state it was checked against is untouched."""


class GameAlreadyOver(InvalidMove):
    pass


class NotOwnPit(InvalidMove):
    pass


class EmptyPit(InvalidMove):
    pass


@dataclass(frozen=True)
class GameState:
    pits: Tuple[int, ...]
    current_player: int
    winner: Winner
    game_over: bool


@dataclass(frozen=True)
class CaptureInfo:
    landing_index: int
    opposite_index: int
    captured_count: int
    to_store: int


@dataclass(frozen=True)
class MoveTrace:
    mover: int
    picked_index: int
    picked_count: int
    drops: Tuple[int, ...]
    landing_index: int
    capture: Optional[CaptureInfo]
    extra_turn: bool
    terminal_after: bool
    sweep_one: int
    sweep_two: int


@dataclass(frozen=True)
class MoveInfo:
    state: GameState
    extra_turn: bool
    capture: bool
    trace: MoveTrace


def initial_state(seeds: int = 4) -> GameState:
    if seeds < 0:
        raise ValueError("seeds must be non-negative")
    pits = [seeds] * BOARD_SIZE
    pits[STORE_ONE] = 0
    pits[STORE_TWO] = 0
    return GameState(tuple(pits), PLAYER_ONE, None, False)


def other_player(player: int) -> int:
    return PLAYER_TWO if player == PLAYER_ONE else PLAYER_ONE


def store_of(player: int) -> int:
    return STORE_ONE if player == PLAYER_ONE else STORE_TWO


def opponent_store_of(player: int) -> int:
    return STORE_TWO if player == PLAYER_ONE else STORE_ONE


def pits_of(player: int) -> Tuple[int, ...]:
    return PITS_ONE if player == PLAYER_ONE else PITS_TWO


def opposite_pit(index: int) -> int:
    return 12 - index


def is_own_pit(player: int, index: int) -> bool:
    if player == PLAYER_ONE:
        return 0 <= index <= 5
    if player == PLAYER_TWO:
        return 7 <= index <= 12
    return False


def legal_moves(state: GameState) -> List[int]:
    if state.game_over:
        return []
    return [i for i in pits_of(state.current_player) if state.pits[i] > 0]


def total_stones(state: GameState) -> int:
    return sum(state.pits)


def winner_for(pits: List[int]) -> Union[int, str]:
    if pits[STORE_ONE] > pits[STORE_TWO]:
        return PLAYER_ONE
    if pits[STORE_TWO] > pits[STORE_ONE]:
        return PLAYER_TWO
    return DRAW


def check_move(state: GameState, pit_index: int) -> None:
    if state.game_over:
        raise GameAlreadyOver("illegal move: game is over")
    if not is_own_pit(state.current_player, pit_index):
        raise NotOwnPit(f"illegal move: pit {pit_index} does not belong to player {state.current_player}")
    if state.pits[pit_index] == 0:
        raise EmptyPit(f"illegal move: pit {pit_index} is empty")


def _sow(pits: List[int], mover: int, pit_index: int) -> Tuple[int, List[int]]:
    seeds = pits[pit_index]
    pits[pit_index] = 0
    skip = opponent_store_of(mover)
    drops: List[int] = []
    pos = pit_index

    while seeds > 0:
        pos = (pos + 1) % BOARD_SIZE
        if pos == skip:
            continue
        pits[pos] += 1
        drops.append(pos)
        seeds -= 1

    return pos, drops


def _sweep(pits: List[int], row: Tuple[int, ...], store: int) -> int:
    swept = sum(pits[i] for i in row)
    for i in row:
        pits[i] = 0
    pits[store] += swept
    return swept


def apply_move_with_info(state: GameState, pit_index: int) -> MoveInfo:
    check_move(state, pit_index)

    pits = list(state.pits)
    mover = state.current_player
    picked_count = pits[pit_index]
    landing, drops = _sow(pits, mover, pit_index)

    own_store = store_of(mover)
    capture_info: Optional[CaptureInfo] = None
    if is_own_pit(mover, landing) and pits[landing] == 1:
        opp_i = opposite_pit(landing)
        if pits[opp_i] > 0:
            captured = pits[opp_i] + 1
            pits[own_store] += captured
            pits[landing] = 0
            pits[opp_i] = 0
            capture_info = CaptureInfo(
                landing_index=landing,
                opposite_index=opp_i,
                captured_count=captured,
                to_store=own_store,
            )

    extra_turn = landing == own_store

    sweep_one = 0
    sweep_two = 0
    winner: Winner = None
    game_over = False
    row_one_empty = all(pits[i] == 0 for i in PITS_ONE)
    row_two_empty = all(pits[i] == 0 for i in PITS_TWO)
    if row_one_empty or row_two_empty:
        game_over = True
        sweep_one = _sweep(pits, PITS_ONE, STORE_ONE)
        sweep_two = _sweep(pits, PITS_TWO, STORE_TWO)
        winner = winner_for(pits)
        extra_turn = False

    next_player = mover if extra_turn or game_over else other_player(mover)
    new_state = GameState(tuple(pits), next_player, winner, game_over)
    trace = MoveTrace(
        mover=mover,
        picked_index=pit_index,
        picked_count=picked_count,
        drops=tuple(drops),
        landing_index=landing,
        capture=capture_info,
        extra_turn=extra_turn,
        terminal_after=game_over,
        sweep_one=sweep_one,
        sweep_two=sweep_two,
    )
    return MoveInfo(new_state, extra_turn, capture_info is not None, trace)


def apply_move(state: GameState, pit_index: int) -> GameState:
    return apply_move_with_info(state, pit_index).state


def pit_highlights(state: GameState) -> List[str]:
    """Classify every board index for rendering.

    Sowable pits of the player to move that still hold stones are ``valid``
    while the game is running; the other side's pits are ``inactive``; both
    stores and the remaining pits of the player to move are ``neutral``.
    """
    out: List[str] = []
    for i, count in enumerate(state.pits):
        if i in (STORE_ONE, STORE_TWO):
            out.append(HIGHLIGHT_NEUTRAL)
            continue
        own = is_own_pit(state.current_player, i)
        if own and count > 0 and not state.game_over:
            out.append(HIGHLIGHT_VALID)
        elif not own:
            out.append(HIGHLIGHT_INACTIVE)
        else:
            out.append(HIGHLIGHT_NEUTRAL)
    return out


class MancalaGame:
    """Mutable holder for the single authoritative GameState of a viewer."""

    def __init__(self, seeds: int = 4) -> None:
        self._seeds = seeds
        self._state = initial_state(seeds)
        self.last_move: Optional[MoveInfo] = None

    @property
    def state(self) -> GameState:
        return self._state

    def reset(self) -> None:
        self._state = initial_state(self._seeds)
        self.last_move = None

    def is_own_pit(self, player: int, index: int) -> bool:
        return is_own_pit(player, index)

    def play(self, pit_index: int) -> MoveInfo:
        info = apply_move_with_info(self._state, pit_index)
        self._state = info.state
        self.last_move = info
        return info

    def make_move(self, pit_index: int) -> bool:
        try:
            self.play(pit_index)
        except InvalidMove:
            return False
        return True

    def get_state(self) -> GameState:
        return self._state

    def load_state(self, state: GameState) -> None:
        # No invariant checks: snapshots from the channel are trusted as-is.
        self._state = GameState(
            tuple(state.pits),
            state.current_player,
            state.winner,
            state.game_over,
        )
        self.last_move = None


def pretty_print(state: GameState) -> str:
    """
    Plain-text board, Player 2 on top.

      - Top row shows pits 12..7 left->right, bottom row pits 0..5.
      - Player 2's store (13) is the left column, Player 1's store (6) the right.
    """
    max_val = max(state.pits)
    digits = max(2, len(str(max_val)))
    pit_inner = digits + 2
    store_inner = max(4, digits + 2)

    def pit_cell(n: int) -> str:
        return f" {n:>{digits}} "

    def store_cell(n: int) -> str:
        return f"{n:^{store_inner}d}"

    top_idx = list(reversed(PITS_TWO))
    bottom_idx = list(PITS_ONE)

    border = "+" + "+".join(["-" * store_inner] + ["-" * pit_inner] * 6 + ["-" * store_inner]) + "+"
    blank = " " * store_inner
    row_top = "|" + "|".join([blank, *(pit_cell(state.pits[i]) for i in top_idx), blank]) + "|"
    row_mid = (
        "|"
        + "|".join([store_cell(state.pits[STORE_TWO])] + [" " * pit_inner] * 6 + [store_cell(state.pits[STORE_ONE])])
        + "|"
    )
    row_bottom = "|" + "|".join([blank, *(pit_cell(state.pits[i]) for i in bottom_idx), blank]) + "|"

    num_indent = " " * (1 + store_inner + 1)
    top_nums = " ".join(f"{i:^{pit_inner}d}" for i in top_idx)
    bottom_nums = " ".join(f"{i:^{pit_inner}d}" for i in bottom_idx)

    if state.game_over:
        status = "Game over: draw" if state.winner == DRAW else f"Game over: player {state.winner} wins"
    else:
        status = f"Turn: player {state.current_player}"

    lines = [
        status,
        "",
        "PLAYER 2".center(len(border)),
        f"{num_indent}{top_nums}",
        border,
        row_top,
        row_mid,
        row_bottom,
        border,
        f"{num_indent}{bottom_nums}",
        "PLAYER 1".center(len(border)),
    ]
    return "\n".join(lines)
