"""
Session registry.

Process-wide map of live matches, their seats, and which connection is
bound to which seat. Only match creation and eviction add or remove
entries; everything runs on the single event loop thread.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field

from server.traptactoe.state import SYMBOLS, LOBBY, FINISHED, opponent

logger = logging.getLogger(__name__)


def generate_match_code():
    """Generate a short, human-friendly match code."""
    chars = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no I/O/0/1 for clarity
    return "".join(secrets.choice(chars) for _ in range(5))


def generate_token():
    return secrets.token_urlsafe(24)


@dataclass
class Participant:
    name: str
    token: str
    connection: object = None

    @property
    def connected(self):
        return self.connection is not None


@dataclass
class Match:
    code: str
    state: dict
    seats: dict = field(default_factory=dict)         # symbol -> Participant
    created_at: float = field(default_factory=time.time)

    @property
    def started(self):
        return self.state["phase"] != LOBBY

    @property
    def finished(self):
        return self.state["phase"] == FINISHED

    @property
    def full(self):
        return len(self.seats) == len(SYMBOLS)

    @property
    def abandoned(self):
        return not any(p.connected for p in self.seats.values())

    def symbol_for_token(self, token):
        if not isinstance(token, str):
            return None
        for symbol, participant in self.seats.items():
            if secrets.compare_digest(participant.token.encode(),
                                      token.encode("utf-8", "surrogatepass")):
                return symbol
        return None

    def opponent_of(self, symbol):
        return self.seats.get(opponent(symbol))

    def names(self):
        return {s: (self.seats[s].name if s in self.seats else None) for s in SYMBOLS}


@dataclass
class Binding:
    """Which seat a live connection speaks for."""
    match_code: str
    symbol: str
    token: str


class SessionRegistry:

    def __init__(self, engine):
        self.engine = engine
        self.matches: dict[str, Match] = {}           # code -> Match
        self.bindings: dict[object, Binding] = {}     # connection -> Binding

    # ── Match Lifecycle ──────────────────────────────────────────────

    def create_match(self, name, connection):
        code = generate_match_code()
        while code in self.matches:
            code = generate_match_code()

        symbol = self.engine.choose_symbol()
        match = Match(code=code, state=self.engine.initial_state())
        match.seats[symbol] = Participant(name=name, token=generate_token())
        self.matches[code] = match
        self.bind(connection, match, symbol)

        logger.info("Match %s created, %s seated as %s", code, name, symbol)
        return match, symbol

    def join_match(self, code, name, connection):
        match = self.matches.get(code)
        if match is None:
            raise ValueError(f"Match {code} not found")
        if match.full:
            raise ValueError("Match is full")

        symbol = next(s for s in SYMBOLS if s not in match.seats)
        match.seats[symbol] = Participant(name=name, token=generate_token())
        self.bind(connection, match, symbol)

        logger.info("%s joined match %s as %s", name, code, symbol)
        return match, symbol

    def get(self, code):
        return self.matches.get(code)

    def evict_if_abandoned(self, code, match=None):
        """
        Drop the match if no seat has a live connection.

        Passing the match guards against a newer match that reused the code.
        """
        current = self.matches.get(code)
        if current is None or (match is not None and current is not match):
            return False
        if not current.abandoned:
            return False
        del self.matches[code]
        logger.info("Match %s evicted after grace period, %.0fs old",
                    code, time.time() - current.created_at)
        return True

    # ── Connection Binding ───────────────────────────────────────────

    def bind(self, connection, match, symbol):
        participant = match.seats[symbol]
        participant.connection = connection
        self.bindings[connection] = Binding(match.code, symbol, participant.token)

    def unbind(self, connection):
        return self.bindings.pop(connection, None)

    def binding_for(self, connection):
        return self.bindings.get(connection)

    def swap_seats(self, match):
        """Exchange the two participants' symbols and rewrite their bindings."""
        match.seats = {s: match.seats[opponent(s)] for s in SYMBOLS}
        for binding in self.bindings.values():
            if binding.match_code == match.code:
                binding.symbol = match.symbol_for_token(binding.token)
        logger.info("Match %s swapped seats", match.code)
