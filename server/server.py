"""
Trap Tac Toe WebSocket match server.

Handles match creation, seat binding, reconnection, and routing actions
to the game engine. Every inbound message is turned into an outbox of
per-connection payloads and delivered while holding the server lock, so
messages are handled one at a time, sends included, in arrival order.
"""

import argparse
import asyncio
import json
import logging
import os

import websockets

from server.registry import SessionRegistry
from server.traptactoe.engine import (
    TrapTacToeEngine, TURN_ACTIONS, RESTART_VOTE, ARM_TRAP,
)

logger = logging.getLogger(__name__)

GRACE_PERIOD_SECONDS = 5.0
MAX_NAME_LENGTH = 20
DEFAULT_NAME = "Player"
SUPERSEDED_CLOSE_CODE = 4000


def clean_name(raw):
    name = str(raw if raw is not None else "").strip()[:MAX_NAME_LENGTH]
    return name or DEFAULT_NAME


def clean_code(raw):
    return str(raw if raw is not None else "").strip().upper()


class Outbox:
    """Payloads produced by one inbound message, delivered after it is handled."""

    def __init__(self):
        self.items = []

    def send(self, connection, payload):
        # Absent seats are skipped; they get a fresh snapshot on reconnect
        if connection is not None:
            self.items.append(("send", connection, payload))

    def close(self, connection, reason):
        self.items.append(("close", connection, reason))

    def error(self, connection, message):
        self.send(connection, {"type": "error", "message": message})


class GameServer:
    """
    Owns the registry and routes messages.
    Game rules live in the engine; seats and bindings in the registry.
    """

    def __init__(self, engine=None, grace_period=GRACE_PERIOD_SECONDS):
        self.engine = engine if engine is not None else TrapTacToeEngine()
        self.registry = SessionRegistry(self.engine)
        self.grace_period = grace_period
        # One message (mutation and sends) at a time, across all connections
        self.lock = asyncio.Lock()

    # ── WebSocket Handler ────────────────────────────────────────────

    async def handle_connection(self, websocket):
        """Main handler for a single WebSocket connection."""
        try:
            async for raw in websocket:
                await self.handle_message(websocket, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self.handle_disconnect(websocket)

    async def handle_message(self, websocket, raw):
        async with self.lock:
            outbox = Outbox()
            self.dispatch(outbox, websocket, raw)
            await self._deliver(outbox)

    async def handle_disconnect(self, websocket):
        async with self.lock:
            outbox = Outbox()
            match = self.release(outbox, websocket)
            await self._deliver(outbox)
        if match is not None:
            loop = asyncio.get_running_loop()
            loop.call_later(self.grace_period, self.registry.evict_if_abandoned,
                            match.code, match)

    # ── Dispatch ─────────────────────────────────────────────────────

    def dispatch(self, outbox, websocket, raw):
        try:
            msg = json.loads(raw)
        except (ValueError, TypeError):
            outbox.error(websocket, "Invalid JSON")
            return
        if not isinstance(msg, dict):
            outbox.error(websocket, "Invalid message")
            return

        msg_type = msg.get("type")
        try:
            if msg_type == "create":
                self._handle_create(outbox, websocket, msg)
            elif msg_type == "join":
                self._handle_join(outbox, websocket, msg)
            elif msg_type == "reconnect":
                self._handle_reconnect(outbox, websocket, msg)
            elif msg_type in TURN_ACTIONS or msg_type == RESTART_VOTE:
                self._handle_action(outbox, websocket, msg_type, msg)
            else:
                outbox.error(websocket, f"Unknown message type: {msg_type}")
        except ValueError as e:
            logger.debug("Rejected %s: %s", msg_type, e)
            outbox.error(websocket, str(e))

    def release(self, outbox, websocket):
        """Unbind a closed connection and pause its seat. Returns the match, if any."""
        binding = self.registry.unbind(websocket)
        if binding is None:
            return None
        match = self.registry.get(binding.match_code)
        if match is None:
            return None

        participant = match.seats[binding.symbol]
        if participant.connection is websocket:
            participant.connection = None
            opp = match.opponent_of(binding.symbol)
            if opp is not None:
                outbox.send(opp.connection, {"type": "opponentDisconnected"})
            logger.info("%s disconnected from match %s", participant.name, match.code)
        return match

    # ── Message Handlers ─────────────────────────────────────────────

    def _handle_create(self, outbox, websocket, msg):
        self._require_unbound(websocket)
        name = clean_name(msg.get("displayName"))
        match, symbol = self.registry.create_match(name, websocket)
        outbox.send(websocket, {
            "type": "created",
            "matchId": match.code,
            "symbol": symbol,
            "playerToken": match.seats[symbol].token,
        })

    def _handle_join(self, outbox, websocket, msg):
        self._require_unbound(websocket)
        code = clean_code(msg.get("matchId"))
        name = clean_name(msg.get("displayName"))

        match = self.registry.get(code)
        if match is None:
            raise ValueError(f"Match {code} not found")
        if match.full:
            raise ValueError("Match is full")
        result = self.engine.start_round(match.state)
        match, symbol = self.registry.join_match(code, name, websocket)
        match.state = result.new_state

        outbox.send(websocket, {
            "type": "joined",
            "matchId": match.code,
            "symbol": symbol,
            "playerToken": match.seats[symbol].token,
        })
        self._announce_round(outbox, match)

    def _handle_action(self, outbox, websocket, kind, msg):
        binding = self.registry.binding_for(websocket)
        if binding is None:
            raise ValueError("Not in a match")
        match = self.registry.get(binding.match_code)
        if match is None:
            raise ValueError("Match no longer exists")

        symbol = binding.symbol
        action = {"kind": kind}
        if kind != RESTART_VOTE:
            action["cell"] = msg.get("cell")
        result = self.engine.apply_action(match.state, symbol, action)
        match.state = result.new_state

        if kind == RESTART_VOTE:
            self._publish_vote(outbox, match, symbol, result)
        else:
            self._publish_turn(outbox, match, symbol, kind, result)

    def _handle_reconnect(self, outbox, websocket, msg):
        code = clean_code(msg.get("matchId"))
        match = self.registry.get(code)
        symbol = match.symbol_for_token(msg.get("playerToken")) if match else None
        if symbol is None:
            outbox.send(websocket, {"type": "reconnectFailed",
                                    "reason": "Session not found"})
            return

        current = self.registry.binding_for(websocket)
        if current is not None and (current.match_code, current.symbol) != (code, symbol):
            raise ValueError("Already in a match")

        participant = match.seats[symbol]
        stale = participant.connection
        if stale is not None and stale is not websocket:
            self.registry.unbind(stale)
            outbox.send(stale, {"type": "superseded",
                                "reason": "Session resumed from another connection"})
            outbox.close(stale, "superseded")
            logger.info("Superseded stale connection for %s in match %s", symbol, code)

        self.registry.bind(websocket, match, symbol)
        opp = match.opponent_of(symbol)
        outbox.send(websocket, {
            "type": "reconnected",
            "matchId": code,
            "symbol": symbol,
            "opponentName": opp.name if opp else None,
            "started": match.started,
            "finished": match.finished,
        })
        if match.started:
            outbox.send(websocket, self.snapshot(match, symbol))
        if opp is not None:
            outbox.send(opp.connection, {"type": "opponentReconnected"})
        logger.info("%s reconnected to match %s as %s", participant.name, code, symbol)

    def _require_unbound(self, websocket):
        if self.registry.binding_for(websocket) is not None:
            raise ValueError("Already in a match")

    # ── Views & Broadcasting ─────────────────────────────────────────

    def snapshot(self, match, symbol):
        """The payload a seat should hold right now: asymmetric, or full once finished."""
        if match.finished:
            view = {"type": "finished", **self.engine.get_full_view(match.state)}
            view["yourSymbol"] = symbol
        else:
            view = {"type": "state", **self.engine.get_player_view(match.state, symbol)}
        view["players"] = match.names()
        return view

    def _broadcast_snapshots(self, outbox, match):
        for symbol, participant in match.seats.items():
            outbox.send(participant.connection, self.snapshot(match, symbol))

    def _announce_round(self, outbox, match):
        state = match.state
        for symbol, participant in match.seats.items():
            opp = match.opponent_of(symbol)
            outbox.send(participant.connection, {
                "type": "started",
                "matchId": match.code,
                "symbol": symbol,
                "opponentName": opp.name if opp else None,
                "firstMover": state["first_mover"],
                "round": state["round"],
            })
        self._broadcast_snapshots(outbox, match)
        logger.info("Match %s round %d started, %s moves first",
                    match.code, state["round"], state["first_mover"])

    def _publish_turn(self, outbox, match, symbol, kind, result):
        triggered = result.find("trap_triggered")
        cell = result.events[0]["cell"]

        report = {"type": "actionResult", "action": kind, "cell": cell,
                  "success": triggered is None}
        if triggered is not None:
            report["reason"] = "A trap was triggered here"
            report["cleared"] = triggered["cleared"]
        drawn = result.find("power_up_drawn")
        if drawn is not None:
            report["drawn"] = drawn["power_up"]
        outbox.send(match.seats[symbol].connection, report)

        notice = {"type": "opponentAction", "action": kind,
                  "success": triggered is None}
        if kind != ARM_TRAP:
            notice["cell"] = cell
        opp = match.opponent_of(symbol)
        outbox.send(opp.connection if opp else None, notice)

        self._broadcast_snapshots(outbox, match)
        if result.game_over:
            logger.info("Match %s round %d finished: %s", match.code,
                        match.state["round"], match.state["outcome"]["result"])

    def _publish_vote(self, outbox, match, symbol, result):
        outbox.send(match.seats[symbol].connection,
                    {"type": "actionResult", "action": RESTART_VOTE, "success": True})
        opp = match.opponent_of(symbol)
        outbox.send(opp.connection if opp else None,
                    {"type": "opponentAction", "action": RESTART_VOTE, "success": True})

        started = result.find("round_started")
        if started is not None:
            if started["swap_seats"]:
                self.registry.swap_seats(match)
            self._announce_round(outbox, match)
        else:
            self._broadcast_snapshots(outbox, match)

    # ── Delivery ─────────────────────────────────────────────────────

    async def _deliver(self, outbox):
        for op, connection, payload in outbox.items:
            if op == "send":
                await self._send(connection, payload)
            else:
                await self._close(connection, payload)

    async def _send(self, websocket, data):
        try:
            await websocket.send(json.dumps(data))
        except websockets.ConnectionClosed:
            logger.debug("Dropped %s for closed connection", data.get("type"))

    async def _close(self, websocket, reason):
        try:
            await websocket.close(code=SUPERSEDED_CLOSE_CODE, reason=reason)
        except websockets.ConnectionClosed:
            pass


# ── Server Entry Point ───────────────────────────────────────────────

async def run_server(host="0.0.0.0", port=8765, grace_period=GRACE_PERIOD_SECONDS):
    server = GameServer(grace_period=grace_period)

    logger.info("Trap Tac Toe server starting on ws://%s:%s", host, port)
    async with websockets.serve(server.handle_connection, host, port):
        logger.info("Server running. Ctrl+C to stop.")
        await asyncio.Future()  # run forever


def main(argv=None):
    parser = argparse.ArgumentParser(description="Trap Tac Toe match server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", 8765)),
                        help="Port to bind to (default: $PORT or 8765)")
    parser.add_argument("--grace-period", type=float, default=GRACE_PERIOD_SECONDS,
                        help="Seconds an abandoned match is kept for reconnection")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # Handshake probes are noise at INFO
    logging.getLogger("websockets").setLevel(logging.WARNING)

    try:
        asyncio.run(run_server(args.host, args.port, args.grace_period))
    except KeyboardInterrupt:
        logger.info("Server stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
