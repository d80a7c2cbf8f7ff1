"""
Constants and state helpers for Trap Tac Toe.

Board layout, power-up kinds, round setup, and the win/draw evaluator.
"""

# ── Constants ─────────────────────────────────────────────────────────

SYMBOLS = ("X", "O")
BOARD_SIZE = 9

TRAP = "trap"
REMOVE = "remove"
CONVERT = "convert"
POWER_UPS = (TRAP, REMOVE, CONVERT)

LOBBY = "lobby"
IN_PROGRESS = "in_progress"
FINISHED = "finished"

WIN_LINES = (
    (0, 1, 2), (3, 4, 5), (6, 7, 8),   # rows
    (0, 3, 6), (1, 4, 7), (2, 5, 8),   # columns
    (0, 4, 8), (2, 4, 6),              # diagonals
)


def opponent(symbol):
    return "O" if symbol == "X" else "X"


def draw_power_up(rng):
    """Draw one power-up kind uniformly at random."""
    return rng.choice(POWER_UPS)


# ── State Creation ────────────────────────────────────────────────────

def create_initial_state():
    """Build the state of a match that is still waiting for its second seat."""
    return {
        "game": "traptactoe",
        "board": [None] * BOARD_SIZE,
        "resources": {s: [] for s in SYMBOLS},
        "traps": {s: [] for s in SYMBOLS},
        "turn": None,
        "first_mover": None,
        "phase": LOBBY,
        "outcome": None,
        "restart_votes": {s: False for s in SYMBOLS},
        "round": 0,
    }


def reset_round(state, first_mover):
    """Clear the board and everything held, and open a new round in place."""
    state["board"] = [None] * BOARD_SIZE
    state["resources"] = {s: [] for s in SYMBOLS}
    state["traps"] = {s: [] for s in SYMBOLS}
    state["restart_votes"] = {s: False for s in SYMBOLS}
    state["outcome"] = None
    state["turn"] = first_mover
    state["first_mover"] = first_mover
    state["phase"] = IN_PROGRESS
    state["round"] += 1


# ── Query Helpers ─────────────────────────────────────────────────────

def trap_owner(state, cell):
    """Return the symbol that armed a trap on this cell, or None."""
    for symbol in SYMBOLS:
        if cell in state["traps"][symbol]:
            return symbol
    return None


def owned_cells(board, symbol):
    return [i for i, owner in enumerate(board) if owner == symbol]


def find_winning_line(board):
    """
    Return (owner, [a, b, c]) for the first line fully held by one symbol,
    or None. Works on any 9-cell list, committed or hypothetical.
    """
    for a, b, c in WIN_LINES:
        if board[a] is not None and board[a] == board[b] == board[c]:
            return board[a], [a, b, c]
    return None


def evaluate_board(board):
    """
    Return the round outcome for this board, or None if play continues.

    A win takes precedence; a draw needs every cell filled with no line.
    """
    win = find_winning_line(board)
    if win is not None:
        winner, line = win
        return {"result": "win", "winner": winner, "line": line}
    if all(cell is not None for cell in board):
        return {"result": "draw", "winner": None, "line": None}
    return None
