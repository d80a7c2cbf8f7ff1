"""
Abstract game engine interface.

The match server routes every seat action through these methods and
delivers the resulting views. It knows nothing about board rules; the
engine knows nothing about connections.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class ActionResult:
    """Returned by apply_action to tell the server what happened."""
    new_state: dict
    # Structured record of what changed, in order, for the broadcaster
    events: list[dict] = field(default_factory=list)
    # If the round is over after this action
    game_over: bool = False

    def find(self, kind):
        """Return the first event of the given kind, or None."""
        for event in self.events:
            if event["kind"] == kind:
                return event
        return None


class GameEngine(ABC):
    """
    Pure-logic game engine. No networking, no rendering — just rules.

    State is always a plain dict (JSON-serializable). apply_action never
    mutates the state it is given: it returns a new one, or raises
    ValueError and leaves everything untouched.
    """

    @abstractmethod
    def initial_state(self) -> dict:
        """Create the state of a freshly created, not yet started match."""
        ...

    @abstractmethod
    def start_round(self, state: dict) -> ActionResult:
        """Start the first round once both seats are filled."""
        ...

    @abstractmethod
    def get_player_view(self, state: dict, symbol: str) -> dict:
        """
        Return a filtered view of the state for one seat.
        Hides everything that seat must not see.
        """
        ...

    @abstractmethod
    def get_full_view(self, state: dict) -> dict:
        """Return the fully revealed view sent once a round is over."""
        ...

    @abstractmethod
    def apply_action(self, state: dict, symbol: str, action: dict) -> ActionResult:
        """
        Validate and apply a seat's action to the state.
        Returns an ActionResult with the new state.
        Raises ValueError if the action is invalid.
        """
        ...
