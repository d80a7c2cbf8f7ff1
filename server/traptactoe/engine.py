"""
Trap Tac Toe — game engine implementation.

Implements the GameEngine interface as a pure state machine.
All state is a plain dict. No side effects, no networking.

Phase machine:
  lobby → in_progress → finished → (both vote restart) → in_progress
"""

import logging
import random
from copy import deepcopy

from server.game_engine import GameEngine, ActionResult
from server.traptactoe.state import (
    SYMBOLS, BOARD_SIZE, TRAP, REMOVE, CONVERT,
    LOBBY, FINISHED,
    opponent, draw_power_up, create_initial_state, reset_round,
    trap_owner, owned_cells, find_winning_line, evaluate_board,
)

logger = logging.getLogger(__name__)

PLACE = "place"
ARM_TRAP = "arm-trap"
REMOVE_OPPONENT_CELL = "remove-opponent-cell"
CONVERT_OPPONENT_CELL = "convert-opponent-cell"
RESTART_VOTE = "restart-vote"

TURN_ACTIONS = (PLACE, ARM_TRAP, REMOVE_OPPONENT_CELL, CONVERT_OPPONENT_CELL)


class TrapTacToeEngine(GameEngine):

    def __init__(self, rng=None):
        # Symbols, first movers, power-up draws and seat swaps all come from here
        self.rng = rng if rng is not None else random.Random()

    # ── Setup ─────────────────────────────────────────────────────────

    def initial_state(self):
        return create_initial_state()

    def choose_symbol(self):
        """Pick the creator's symbol."""
        return self.rng.choice(SYMBOLS)

    def start_round(self, state):
        if state["phase"] != LOBBY:
            raise ValueError("Match already started")
        state = deepcopy(state)
        first_mover = self.rng.choice(SYMBOLS)
        reset_round(state, first_mover)
        events = [{"kind": "round_started", "round": state["round"],
                   "first_mover": first_mover, "swap_seats": False}]
        return ActionResult(new_state=state, events=events)

    # ── Views ─────────────────────────────────────────────────────────

    def get_player_view(self, state, symbol):
        """Return the board with opponent traps and power-up kinds hidden."""
        opp = opponent(symbol)
        return {
            "board": list(state["board"]),
            "turn": state["turn"],
            "phase": state["phase"],
            "round": state["round"],
            "yourSymbol": symbol,
            "yourResources": list(state["resources"][symbol]),
            "opponentResourceCount": len(state["resources"][opp]),
            "yourTraps": sorted(state["traps"][symbol]),
        }

    def get_full_view(self, state):
        """Everything, for both seats, once the round is over."""
        return {
            "board": list(state["board"]),
            "resources": {s: list(state["resources"][s]) for s in SYMBOLS},
            "traps": {s: sorted(state["traps"][s]) for s in SYMBOLS},
            "outcome": deepcopy(state["outcome"]),
            "round": state["round"],
            "restartVotes": dict(state["restart_votes"]),
        }

    # ── Action Dispatch ───────────────────────────────────────────────

    def apply_action(self, state, symbol, action):
        if symbol not in SYMBOLS:
            raise ValueError(f"Unknown symbol: {symbol}")
        kind = action.get("kind")

        if kind == RESTART_VOTE:
            return self._do_restart_vote(state, symbol)
        if kind not in TURN_ACTIONS:
            raise ValueError(f"Unknown action: {kind}")

        if state["phase"] == LOBBY:
            raise ValueError("Match has not started")
        if state["phase"] == FINISHED:
            raise ValueError("Game is over")
        if state["turn"] != symbol:
            raise ValueError("Not your turn")
        cell = self._validate_cell(action.get("cell"))

        state = deepcopy(state)
        if kind == PLACE:
            events = self._do_place(state, symbol, cell)
        elif kind == ARM_TRAP:
            events = self._do_arm_trap(state, symbol, cell)
        elif kind == REMOVE_OPPONENT_CELL:
            events = self._do_remove(state, symbol, cell)
        else:
            events = self._do_convert(state, symbol, cell)

        events += self._end_turn(state)
        return ActionResult(new_state=state, events=events,
                            game_over=state["phase"] == FINISHED)

    # ── Action Implementations ────────────────────────────────────────

    def _do_place(self, state, symbol, cell):
        board = state["board"]
        if board[cell] is not None:
            raise ValueError("Cell is occupied")

        opp = opponent(symbol)
        events = []
        if cell in state["traps"][opp]:
            state["traps"][opp].remove(cell)
            cleared = owned_cells(board, symbol)
            for i in cleared:
                board[i] = None
            events.append({"kind": "trap_triggered", "symbol": symbol,
                           "cell": cell, "cleared": cleared})
        else:
            board[cell] = symbol
            events.append({"kind": "placed", "symbol": symbol, "cell": cell})

        power_up = draw_power_up(self.rng)
        state["resources"][symbol].append(power_up)
        events.append({"kind": "power_up_drawn", "symbol": symbol, "power_up": power_up})
        return events

    def _do_arm_trap(self, state, symbol, cell):
        self._validate_holds(state, symbol, TRAP)
        if state["board"][cell] is not None:
            raise ValueError("Cell is occupied")
        if trap_owner(state, cell) is not None:
            raise ValueError("Cell is already trapped")

        state["resources"][symbol].remove(TRAP)
        state["traps"][symbol].append(cell)
        return [{"kind": "trap_armed", "symbol": symbol, "cell": cell}]

    def _do_remove(self, state, symbol, cell):
        self._validate_holds(state, symbol, REMOVE)
        self._validate_opponent_cell(state, symbol, cell)

        state["resources"][symbol].remove(REMOVE)
        state["board"][cell] = None
        return [{"kind": "cell_removed", "symbol": symbol, "cell": cell}]

    def _do_convert(self, state, symbol, cell):
        self._validate_holds(state, symbol, CONVERT)
        self._validate_opponent_cell(state, symbol, cell)

        provisional = list(state["board"])
        provisional[cell] = symbol
        win = find_winning_line(provisional)
        if win is not None and win[0] == symbol:
            raise ValueError("Converting this cell would complete a line")

        state["resources"][symbol].remove(CONVERT)
        state["board"][cell] = symbol
        return [{"kind": "cell_converted", "symbol": symbol, "cell": cell}]

    def _do_restart_vote(self, state, symbol):
        if state["phase"] != FINISHED:
            raise ValueError("Game is not over")
        if state["restart_votes"][symbol]:
            raise ValueError("Already voted to restart")

        state = deepcopy(state)
        state["restart_votes"][symbol] = True
        events = [{"kind": "restart_voted", "symbol": symbol}]

        if all(state["restart_votes"].values()):
            swap_seats = self.rng.random() < 0.5
            first_mover = self.rng.choice(SYMBOLS)
            reset_round(state, first_mover)
            events.append({"kind": "round_started", "round": state["round"],
                           "first_mover": first_mover, "swap_seats": swap_seats})
            logger.debug("Round %d reset, first mover %s, swap=%s",
                         state["round"], first_mover, swap_seats)

        return ActionResult(new_state=state, events=events)

    def _end_turn(self, state):
        """Finish the round if the board is terminal, otherwise pass the turn."""
        outcome = evaluate_board(state["board"])
        if outcome is not None:
            state["phase"] = FINISHED
            state["outcome"] = outcome
            if outcome["result"] == "win":
                return [{"kind": "win", "winner": outcome["winner"], "line": outcome["line"]}]
            return [{"kind": "draw"}]

        state["turn"] = opponent(state["turn"])
        return [{"kind": "turn_advanced", "turn": state["turn"]}]

    # ── Validation ────────────────────────────────────────────────────

    def _validate_cell(self, cell):
        if isinstance(cell, str) and cell.strip().isdecimal():
            cell = int(cell)
        if isinstance(cell, bool) or not isinstance(cell, int):
            raise ValueError("Invalid cell")
        if cell < 0 or cell >= BOARD_SIZE:
            raise ValueError("Invalid cell")
        return cell

    def _validate_holds(self, state, symbol, power_up):
        if power_up not in state["resources"][symbol]:
            raise ValueError(f"No {power_up} power-up available")

    def _validate_opponent_cell(self, state, symbol, cell):
        if state["board"][cell] != opponent(symbol):
            raise ValueError("Not an opponent cell")
